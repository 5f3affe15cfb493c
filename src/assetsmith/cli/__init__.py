"""Command-line interface for the assetsmith generation pipeline."""
