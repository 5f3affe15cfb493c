"""Structural analysis of generated models.

Four stateless analyzers turn a model's bounding box into game-engine
metadata:

    * **weapon** -- grip hardpoints and attachment points
    * **armor** -- attachment point and scale for an equipment slot
    * **character** -- a skeleton rig and default animation set
    * **building** -- entry points, functional areas, NPC positions

Geometry is not loaded; every analyzer works from a bounding box, which
defaults to the unit cube ``[-1, 1]^3``.  The payloads use camelCase keys
(``buildingType``, ``isMain``, ...) because they are consumed as-is by
the game runtime.

:func:`analyze` dispatches on :class:`~assetsmith.models.AssetType`;
categories without an analyzer produce ``None``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from assetsmith.models import AssetType, GenerationRequest

logger = logging.getLogger(__name__)

Vector = Dict[str, float]
Quaternion = Dict[str, float]

WEAPON_TYPES: tuple[str, ...] = (
    "sword", "axe", "bow", "staff", "shield", "dagger", "mace", "spear",
    "crossbow", "wand", "scimitar", "battleaxe", "longsword",
)
ARMOR_SLOTS: tuple[str, ...] = ("helmet", "chest", "legs", "boots", "gloves")
CREATURE_TYPES: tuple[str, ...] = ("biped", "quadruped", "flying")
BUILDING_TYPES: tuple[str, ...] = ("bank", "store", "house", "temple", "castle", "inn")

_FLOOR_HEIGHT = 3.0


def _vec(x: float, y: float, z: float) -> Vector:
    return {"x": x, "y": y, "z": z}


def _quat(x: float = 0.0, y: float = 0.0, z: float = 0.0, w: float = 1.0) -> Quaternion:
    return {"x": x, "y": y, "z": z, "w": w}


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned bounds of a model."""

    min: Vector
    max: Vector

    @property
    def center(self) -> Vector:
        return {k: (self.min[k] + self.max[k]) / 2 for k in ("x", "y", "z")}

    @property
    def size(self) -> Vector:
        return {k: self.max[k] - self.min[k] for k in ("x", "y", "z")}

    def to_dict(self) -> Dict[str, Vector]:
        return {
            "min": dict(self.min),
            "max": dict(self.max),
            "center": self.center,
            "size": self.size,
        }


def default_bounds() -> BoundingBox:
    """Placeholder bounds used until real geometry is measured."""
    return BoundingBox(min=_vec(-1.0, -1.0, -1.0), max=_vec(1.0, 1.0, 1.0))


# ---------------------------------------------------------------------------
# Keyword inference
# ---------------------------------------------------------------------------

# Longer names first so "crossbow" is not read as "bow".
_WEAPON_SEARCH_ORDER = sorted(WEAPON_TYPES, key=len, reverse=True)

_ARMOR_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("helmet", ("helmet", "helm", "hood", "crown")),
    ("boots", ("boots", "boot", "shoes", "sabatons")),
    ("gloves", ("gloves", "gauntlets", "bracers")),
    ("legs", ("legs", "leggings", "greaves", "trousers")),
    ("chest", ("chest", "plate", "mail", "cuirass", "tunic", "robe")),
)

_BUILDING_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("bank", ("bank",)),
    ("store", ("store", "shop")),
    ("house", ("house", "home")),
    ("temple", ("temple", "church")),
    ("castle", ("castle",)),
    ("inn", ("inn", "tavern")),
)

_ASSET_KEYWORDS: tuple[tuple[AssetType, tuple[str, ...]], ...] = (
    (AssetType.WEAPON, (
        "sword", "axe", "bow", "staff", "dagger", "mace", "spear", "shield",
        "scimitar", "crossbow", "wand",
    )),
    (AssetType.ARMOR, (
        "helmet", "armor", "chest", "legs", "boots", "gloves", "ring", "amulet",
        "cape", "plate", "mail",
    )),
    (AssetType.CONSUMABLE, ("potion", "food", "scroll", "elixir", "bread", "meat", "fish", "rune")),
    (AssetType.TOOL, ("pickaxe", "hatchet", "fishing", "hammer", "knife", "chisel", "tinderbox")),
    (AssetType.BUILDING, ("bank", "store", "shop", "house", "temple", "castle", "tower", "guild", "inn")),
    (AssetType.RESOURCE, ("ore", "bar", "log", "plank", "gem", "stone", "coal")),
    (AssetType.CHARACTER, (
        "goblin", "guard", "merchant", "warrior", "mage", "dragon", "skeleton", "zombie",
    )),
)


def infer_weapon_type(description: str) -> Optional[str]:
    """Return the first weapon name mentioned in *description*, if any."""
    desc = description.lower()
    for weapon in _WEAPON_SEARCH_ORDER:
        if weapon in desc:
            return weapon
    return None


def infer_armor_slot(description: str) -> str:
    """Guess the equipment slot from *description*; defaults to chest."""
    desc = description.lower()
    for slot, words in _ARMOR_KEYWORDS:
        if any(w in desc for w in words):
            return slot
    return "chest"


def infer_building_type(description: str) -> str:
    """Guess the building type from *description*; defaults to house."""
    desc = description.lower()
    for building, words in _BUILDING_KEYWORDS:
        if any(w in desc for w in words):
            return building
    return "house"


def infer_asset_type(description: str) -> AssetType:
    """Guess an asset category from *description*; defaults to decoration."""
    desc = description.lower()
    for asset_type, words in _ASSET_KEYWORDS:
        if any(w in desc for w in words):
            return asset_type
    return AssetType.DECORATION


# ---------------------------------------------------------------------------
# Analyzers
# ---------------------------------------------------------------------------


def analyze_weapon(
    model_url: str,
    weapon_type: str,
    bounds: Optional[BoundingBox] = None,
) -> Dict[str, Any]:
    """Locate grips and attachment points for a weapon."""
    b = bounds or default_bounds()
    center, size = b.center, b.size

    result: Dict[str, Any] = {
        "weaponType": weapon_type,
        "primaryGrip": {
            "position": _vec(0.0, b.min["y"] + size["y"] * 0.2, 0.0),
            "rotation": _quat(),
            "confidence": 0.9,
        },
        "attachmentPoints": [],
    }
    points: List[Dict[str, Any]] = result["attachmentPoints"]

    if weapon_type in ("sword", "axe", "mace", "longsword", "battleaxe", "scimitar", "dagger"):
        points.append({
            "name": "blade_tip",
            "position": _vec(0.0, b.max["y"], 0.0),
            "rotation": _quat(),
        })
    elif weapon_type in ("bow", "crossbow"):
        result["secondaryGrip"] = {
            "position": _vec(0.0, b.max["y"] - size["y"] * 0.3, 0.0),
            "rotation": _quat(),
            "confidence": 0.85,
        }
        points.append({
            "name": "arrow_nock",
            "position": _vec(0.0, center["y"], b.max["z"]),
            "rotation": _quat(),
        })
    elif weapon_type in ("staff", "spear"):
        result["secondaryGrip"] = {
            "position": _vec(0.0, b.min["y"] + size["y"] * 0.7, 0.0),
            "rotation": _quat(),
            "confidence": 0.9,
        }
    elif weapon_type == "shield":
        result["primaryGrip"]["position"] = dict(center)
        points.append({
            "name": "arm_strap",
            "position": _vec(0.0, center["y"], b.min["z"]),
            "rotation": _quat(),
        })

    logger.debug("Weapon analysis for %s (%s): %d attachment points", model_url, weapon_type, len(points))
    return result


def analyze_armor(
    model_url: str,
    slot: str,
    bounds: Optional[BoundingBox] = None,
) -> Dict[str, Any]:
    """Work out where and at what scale an armor piece attaches."""
    b = bounds or default_bounds()
    attachment = dict(b.center)
    scale = _vec(1.0, 1.0, 1.0)

    if slot == "helmet":
        attachment["y"] = b.max["y"]
    elif slot == "legs":
        attachment["y"] = b.min["y"] + b.size["y"] * 0.3
    elif slot == "boots":
        attachment["y"] = b.min["y"]
    elif slot == "gloves":
        scale = _vec(0.8, 0.8, 0.8)

    logger.debug("Armor analysis for %s (%s)", model_url, slot)
    return {
        "slot": slot,
        "attachmentPoint": attachment,
        "rotation": _quat(),
        "scale": scale,
    }


_DEFAULT_ANIMATIONS: Dict[str, List[str]] = {
    "biped": ["idle", "walk", "run", "jump", "attack"],
    "quadruped": ["idle", "walk", "run", "attack", "eat"],
    "flying": ["idle", "fly", "glide", "attack", "land"],
}


def _bone(name: str, position: Vector, parent: Optional[str] = None) -> Dict[str, Any]:
    bone: Dict[str, Any] = {"name": name, "position": position, "rotation": _quat()}
    if parent is not None:
        bone["parent"] = parent
    return bone


def analyze_for_rigging(
    model_url: str,
    creature_type: str,
    bounds: Optional[BoundingBox] = None,
) -> Dict[str, Any]:
    """Build a starter skeleton for a character model."""
    b = bounds or default_bounds()
    c, s = b.center, b.size
    bones: List[Dict[str, Any]] = []

    if creature_type == "biped":
        bones = [
            _bone("root", dict(c)),
            _bone("spine", {**c, "y": c["y"] + s["y"] * 0.1}, "root"),
            _bone("chest", {**c, "y": c["y"] + s["y"] * 0.3}, "spine"),
            _bone("head", {**c, "y": b.max["y"] - s["y"] * 0.1}, "chest"),
        ]
    elif creature_type == "quadruped":
        bones = [
            _bone("root", dict(c)),
            _bone("spine_front", {**c, "x": b.max["x"] - s["x"] * 0.2}, "root"),
            _bone("spine_back", {**c, "x": b.min["x"] + s["x"] * 0.2}, "root"),
            _bone("head", _vec(b.max["x"], c["y"] + s["y"] * 0.2, c["z"]), "spine_front"),
        ]
    elif creature_type == "flying":
        bones = [
            _bone("root", dict(c)),
            _bone("body", dict(c), "root"),
            _bone("wing_left", {**c, "x": b.min["x"]}, "body"),
            _bone("wing_right", {**c, "x": b.max["x"]}, "body"),
        ]

    logger.debug("Rig analysis for %s (%s): %d bones", model_url, creature_type, len(bones))
    return {
        "rigType": creature_type,
        "bones": bones,
        "animations": list(_DEFAULT_ANIMATIONS.get(creature_type, ["idle", "move"])),
    }


def analyze_building(
    model_url: str,
    building_type: str,
    bounds: Optional[BoundingBox] = None,
) -> Dict[str, Any]:
    """Lay out entrances, functional areas and NPC spots for a building."""
    b = bounds or default_bounds()
    c, s = b.center, b.size
    ground = b.min["y"]

    entry_points: List[Dict[str, Any]] = [
        {
            "name": "main_entrance",
            "position": _vec(c["x"], ground, b.max["z"] - 0.1),
            "rotation": _quat(),
            "isMain": True,
        }
    ]
    areas: List[Dict[str, Any]] = []
    npcs: List[Dict[str, Any]] = []

    if building_type == "bank":
        areas.append({
            "name": "teller_counter",
            "type": "counter",
            "position": _vec(c["x"], ground + 1, c["z"]),
            "size": _vec(s["x"] * 0.8, 1.0, 0.5),
        })
        areas.append({
            "name": "vault",
            "type": "vault",
            "position": _vec(c["x"], ground, b.min["z"] + s["z"] * 0.2),
            "size": _vec(s["x"] * 0.4, s["y"] * 0.8, s["z"] * 0.3),
        })
        for offset in (-0.2, 0.2):
            npcs.append({
                "role": "bank_teller",
                "position": _vec(c["x"] + s["x"] * offset, ground, c["z"] - 0.5),
                "rotation": _quat(),
            })
    elif building_type == "store":
        areas.append({
            "name": "shop_counter",
            "type": "counter",
            "position": _vec(c["x"], ground + 0.8, c["z"]),
            "size": _vec(s["x"] * 0.6, 0.8, 0.4),
        })
        areas.append({
            "name": "display_area",
            "type": "display",
            "position": _vec(c["x"], ground + 1, c["z"] + s["z"] * 0.3),
            "size": _vec(s["x"] * 0.8, 2.0, s["z"] * 0.3),
        })
        npcs.append({
            "role": "shopkeeper",
            "position": _vec(c["x"], ground, c["z"] - 0.5),
            "rotation": _quat(),
        })
    elif building_type == "house":
        areas.append({
            "name": "living_area",
            "type": "seating",
            "position": dict(c),
            "size": _vec(s["x"] * 0.7, s["y"] * 0.8, s["z"] * 0.7),
        })
        entry_points.append({
            "name": "side_entrance",
            "position": _vec(b.max["x"] - 0.1, ground, c["z"]),
            "rotation": _quat(y=math.pi / 2),
            "isMain": False,
        })
    elif building_type == "temple":
        areas.append({
            "name": "altar",
            "type": "display",
            "position": _vec(c["x"], ground + 1, b.min["z"] + s["z"] * 0.2),
            "size": _vec(2.0, 1.5, 1.0),
        })
        npcs.append({
            "role": "priest",
            "position": _vec(c["x"], ground, b.min["z"] + s["z"] * 0.3),
            "rotation": _quat(y=math.pi),
        })

    logger.debug(
        "Building analysis for %s (%s): %d entries, %d areas, %d NPCs",
        model_url,
        building_type,
        len(entry_points),
        len(areas),
        len(npcs),
    )
    return {
        "buildingType": building_type,
        "entryPoints": entry_points,
        "functionalAreas": areas,
        "npcPositions": npcs,
        "interiorSpace": {
            "center": _vec(c["x"], ground + s["y"] * 0.5, c["z"]),
            "size": _vec(s["x"] * 0.9, s["y"] * 0.9, s["z"] * 0.9),
        },
        "metadata": {
            "floors": max(1, math.floor(s["y"] / _FLOOR_HEIGHT)),
            "hasBasement": False,
            "hasRoof": True,
        },
    }


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def _weapon(request: GenerationRequest, model_url: str) -> Dict[str, Any]:
    weapon_type = request.subtype or infer_weapon_type(request.description) or "sword"
    return analyze_weapon(model_url, weapon_type)


def _armor(request: GenerationRequest, model_url: str) -> Dict[str, Any]:
    slot = request.subtype or infer_armor_slot(request.description)
    return analyze_armor(model_url, slot)


def _character(request: GenerationRequest, model_url: str) -> Dict[str, Any]:
    creature = (
        request.metadata.get("creature_type")
        or request.metadata.get("creatureType")
        or "biped"
    )
    return analyze_for_rigging(model_url, creature)


def _building(request: GenerationRequest, model_url: str) -> Dict[str, Any]:
    building_type = request.subtype or infer_building_type(request.description)
    return analyze_building(model_url, building_type)


Analyzer = Callable[[GenerationRequest, str], Dict[str, Any]]

# Every AssetType has an entry; ``None`` means "no analysis for this category".
ANALYZERS: Dict[AssetType, Optional[Analyzer]] = {
    AssetType.WEAPON: _weapon,
    AssetType.ARMOR: _armor,
    AssetType.CHARACTER: _character,
    AssetType.BUILDING: _building,
    AssetType.TOOL: None,
    AssetType.CONSUMABLE: None,
    AssetType.RESOURCE: None,
    AssetType.DECORATION: None,
    AssetType.MISC: None,
}


def analyze(request: GenerationRequest, model_url: str) -> Optional[Dict[str, Any]]:
    """Run the analyzer for *request*'s category, or return ``None``."""
    analyzer = ANALYZERS[request.type]
    if analyzer is None:
        logger.info("No structural analysis for %s assets", request.type.value)
        return None
    return analyzer(request, model_url)


__all__ = [
    "ANALYZERS",
    "ARMOR_SLOTS",
    "BUILDING_TYPES",
    "CREATURE_TYPES",
    "WEAPON_TYPES",
    "BoundingBox",
    "analyze",
    "analyze_armor",
    "analyze_building",
    "analyze_for_rigging",
    "analyze_weapon",
    "default_bounds",
    "infer_armor_slot",
    "infer_asset_type",
    "infer_building_type",
    "infer_weapon_type",
]
