"""Data model for generation requests, stage records and stage outputs.

Everything here round-trips through plain dicts (``to_dict`` /
``from_dict``) because the pipeline persists whole results and
individual stage outputs in the :class:`~assetsmith.cache.StageCache`
as JSON.
"""

from __future__ import annotations

import enum
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from assetsmith.errors import ValidationError

_T = TypeVar("_T")


def _known_fields(cls: Type[_T], data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys that are not fields of dataclass *cls*."""
    names = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    return {k: v for k, v in data.items() if k in names}


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AssetType(enum.Enum):
    """Category of game asset being generated."""

    WEAPON = "weapon"
    ARMOR = "armor"
    CONSUMABLE = "consumable"
    TOOL = "tool"
    DECORATION = "decoration"
    CHARACTER = "character"
    BUILDING = "building"
    RESOURCE = "resource"
    MISC = "misc"

    @classmethod
    def parse(cls, value: "AssetType | str") -> "AssetType":
        """Coerce a string (case-insensitive) into an :class:`AssetType`."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ValidationError(
                f"Unknown asset type {value!r} (expected one of: {valid})."
            ) from None


class StageName(enum.Enum):
    """Pipeline stages, declared in execution order."""

    IMAGE = "image"
    MODEL = "model"
    REMESH = "remesh"
    ANALYSIS = "analysis"
    FINAL = "final"

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self)

    @classmethod
    def parse(cls, value: "StageName | str") -> "StageName":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValidationError(
                f"Unknown stage {value!r} (expected one of: {valid})."
            ) from None


STAGE_ORDER: Tuple[StageName, ...] = tuple(StageName)


class StageStatus(enum.Enum):
    """Lifecycle of a single stage record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


STYLES: Tuple[str, ...] = ("realistic", "cartoon", "low-poly", "stylized")

# Ids become cache key prefixes ("{id}:{stage}", "result:{id}"); these would collide.
_RESERVED_IDS = frozenset({"result"})


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationRequest:
    """Immutable description of one asset to generate.

    :param id: Caller-chosen identifier; also the result id and cache prefix.
    :param name: Human name, used for the output file name.
    :param description: Free-text description fed into prompt building.
    :param type: Asset category.
    :param subtype: Category-specific refinement (weapon type, armor slot,
        building type).  Inferred from the description when omitted.
    :param style: One of :data:`STYLES`, or ``None`` for realistic.
    :param metadata: Free-form extras (e.g. ``creature_type`` for characters).
    """

    id: str
    name: str
    description: str
    type: AssetType
    subtype: Optional[str] = None
    style: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise :class:`ValidationError` if the request cannot be run."""
        for attr in ("id", "name", "description"):
            value = getattr(self, attr)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"Generation request is missing '{attr}'.")
        if ":" in self.id or self.id.strip() in _RESERVED_IDS:
            raise ValidationError(
                f"Invalid request id {self.id!r}: ids may not contain ':' or be 'result'."
            )
        if not isinstance(self.type, AssetType):
            raise ValidationError(f"Invalid asset type: {self.type!r}.")
        if self.style is not None and self.style not in STYLES:
            raise ValidationError(
                f"Unknown style {self.style!r} (expected one of: {', '.join(STYLES)})."
            )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationRequest":
        """Build a request from a plain dict (e.g. a batch file entry)."""
        if not isinstance(data, dict):
            raise ValidationError("Generation request must be a mapping.")
        missing = [k for k in ("id", "name", "description", "type") if k not in data]
        if missing:
            raise ValidationError(
                f"Generation request is missing: {', '.join(missing)}."
            )
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            description=str(data["description"]),
            type=AssetType.parse(data["type"]),
            subtype=data.get("subtype"),
            style=data.get("style"),
            metadata=dict(data.get("metadata") or {}),
        )


# ---------------------------------------------------------------------------
# Stage outputs
# ---------------------------------------------------------------------------


@dataclass
class ImageResult:
    """Concept image produced by the image stage."""

    image_url: str
    prompt: str
    model: str = ""
    resolution: str = ""
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageResult":
        return cls(**_known_fields(cls, data))


@dataclass
class ModelResult:
    """Textured mesh produced by the image-to-3D stage."""

    model_url: str
    format: str = "glb"
    polycount: int = 0
    texture_urls: Dict[str, str] = field(default_factory=dict)
    task_id: str = ""
    processing_time: float = 0.0
    thumbnail_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelResult":
        return cls(**_known_fields(cls, data))


@dataclass
class RemeshResult:
    """Polycount-reduced mesh produced by the remesh stage."""

    model_url: str
    original_polycount: int
    remeshed_polycount: int
    target_polycount: int
    task_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemeshResult":
        return cls(**_known_fields(cls, data))


@dataclass
class FinalAsset:
    """Files written by the final stage."""

    model_path: str
    metadata_path: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FinalAsset":
        return cls(**_known_fields(cls, data))


# ---------------------------------------------------------------------------
# Stage records and results
# ---------------------------------------------------------------------------


@dataclass
class StageRecord:
    """Audit entry for one attempt at one stage."""

    stage: StageName
    status: StageStatus = StageStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "timestamp": self.timestamp,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageRecord":
        return cls(
            stage=StageName(data["stage"]),
            status=StageStatus(data.get("status", "pending")),
            output=data.get("output"),
            error=data.get("error"),
            timestamp=data.get("timestamp", 0.0),
            completed_at=data.get("completed_at"),
        )


# Which attribute of GenerationResult holds each stage's typed output.
_OUTPUT_ATTRS: Dict[StageName, str] = {
    StageName.IMAGE: "image_result",
    StageName.MODEL: "model_result",
    StageName.REMESH: "remesh_result",
    StageName.ANALYSIS: "analysis_result",
    StageName.FINAL: "final_asset",
}


@dataclass
class GenerationResult:
    """Accumulated state of one request as it moves through the stages."""

    id: str
    request: GenerationRequest
    stages: List[StageRecord] = field(default_factory=list)
    image_result: Optional[ImageResult] = None
    model_result: Optional[ModelResult] = None
    remesh_result: Optional[RemeshResult] = None
    analysis_result: Optional[Dict[str, Any]] = None
    final_asset: Optional[FinalAsset] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def model_url(self) -> Optional[str]:
        """Remeshed model if available, else the raw generated model."""
        if self.remesh_result is not None:
            return self.remesh_result.model_url
        if self.model_result is not None:
            return self.model_result.model_url
        return None

    @property
    def status(self) -> str:
        """Overall status derived from the stage records."""
        if any(r.status == StageStatus.FAILED for r in self.stages):
            return StageStatus.FAILED.value
        final = self.stage_record(StageName.FINAL)
        if final is not None and final.status == StageStatus.COMPLETED:
            return StageStatus.COMPLETED.value
        if self.stages:
            return StageStatus.PROCESSING.value
        return StageStatus.PENDING.value

    def stage_record(self, stage: StageName) -> Optional[StageRecord]:
        """Return the latest record for *stage*, or ``None``."""
        for record in reversed(self.stages):
            if record.stage == stage:
                return record
        return None

    def is_stage_completed(self, stage: StageName) -> bool:
        record = self.stage_record(stage)
        return record is not None and record.status == StageStatus.COMPLETED

    def truncate_from(self, stage: StageName) -> None:
        """Drop every record and output at or after *stage*."""
        self.stages = [r for r in self.stages if r.stage.index < stage.index]
        for later in STAGE_ORDER[stage.index:]:
            setattr(self, _OUTPUT_ATTRS[later], None)

    def touch(self) -> None:
        self.updated_at = time.time()

    def to_dict(self) -> Dict[str, Any]:
        def _opt(value: Any) -> Any:
            return value.to_dict() if value is not None else None

        return {
            "id": self.id,
            "request": self.request.to_dict(),
            "status": self.status,
            "stages": [r.to_dict() for r in self.stages],
            "image_result": _opt(self.image_result),
            "model_result": _opt(self.model_result),
            "remesh_result": _opt(self.remesh_result),
            "analysis_result": self.analysis_result,
            "final_asset": _opt(self.final_asset),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationResult":
        def _opt(decoder: Any, value: Any) -> Any:
            return decoder(value) if value is not None else None

        return cls(
            id=data["id"],
            request=GenerationRequest.from_dict(data["request"]),
            stages=[StageRecord.from_dict(r) for r in data.get("stages", [])],
            image_result=_opt(ImageResult.from_dict, data.get("image_result")),
            model_result=_opt(ModelResult.from_dict, data.get("model_result")),
            remesh_result=_opt(RemeshResult.from_dict, data.get("remesh_result")),
            analysis_result=data.get("analysis_result"),
            final_asset=_opt(FinalAsset.from_dict, data.get("final_asset")),
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
        )


__all__ = [
    "STAGE_ORDER",
    "STYLES",
    "AssetType",
    "FinalAsset",
    "GenerationRequest",
    "GenerationResult",
    "ImageResult",
    "ModelResult",
    "RemeshResult",
    "StageName",
    "StageRecord",
    "StageStatus",
]
