"""Centralized constants for forkfuture."""

from __future__ import annotations

from pathlib import Path
from typing import Final

# =============================================================================
# Serialization
# =============================================================================

COMPRESSED_MAGIC: Final = b"\x00CZ"
COMPRESSION_LEVEL: Final = 1

# =============================================================================
# Transport
# =============================================================================

READ_CHUNK_SIZE: Final = 64 * 1024
CHILD_WRITE_FAILED: Final = 1

UNENCODABLE_RESULT: Final = "result type cannot be serialized"
UNENCODABLE_EXCEPTION: Final = "exception payload cannot be serialized"

# =============================================================================
# Configuration
# =============================================================================

GLOBAL_CONFIG_PATH: Final = Path.home() / ".forkfuture" / "defaults.toml"
PROJECT_CONFIG_NAME: Final = "forkfuture.toml"
