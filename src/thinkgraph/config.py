"""Environment-driven settings.

Variables:
    MEMORY_PATH            JSONL file holding the graph
    AUTO_LINK              "true" enables heuristic linking of new entities
    EMBEDDING_MODEL        sentence-transformers model name
    EMBEDDING_DIMENSIONS   expected vector length
    EMBEDDING_CACHE        "false" disables the on-disk embedding cache
    EMBEDDING_CACHE_DIR    directory for the embedding cache database
    MCP_DEBUG              "true" turns on debug logging
"""

import os
from dataclasses import dataclass
from pathlib import Path

from .constants import DEFAULT_EMBEDDING_DIMENSION, DEFAULT_EMBEDDING_MODEL

DEFAULT_HOME = Path.home() / ".mcp-think-tank"
DEFAULT_MEMORY_PATH = DEFAULT_HOME / "memory.jsonl"
DEFAULT_CACHE_DIR = DEFAULT_HOME / "cache"


def _env_flag(environ: dict, name: str, default: bool = False) -> bool:
    value = environ.get(name)
    if value is None:
        return default
    return value.strip().lower() == "true"


@dataclass
class Settings:
    """Resolved configuration for a store and its embedding backend."""

    memory_path: Path = DEFAULT_MEMORY_PATH
    auto_link: bool = False
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_dimensions: int = DEFAULT_EMBEDDING_DIMENSION
    use_embedding_cache: bool = True
    cache_dir: Path = DEFAULT_CACHE_DIR
    debug: bool = False

    @property
    def log_path(self) -> Path:
        """Log file kept next to the memory file."""
        return self.memory_path.with_suffix(".log")

    @property
    def embedding_cache_path(self) -> Path:
        return self.cache_dir / "embeddings.db"

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "Settings":
        if environ is None:
            environ = dict(os.environ)

        dims = environ.get("EMBEDDING_DIMENSIONS")
        try:
            dimensions = int(dims) if dims else DEFAULT_EMBEDDING_DIMENSION
        except ValueError as e:
            raise ValueError(f"EMBEDDING_DIMENSIONS must be an integer, got {dims!r}") from e

        return cls(
            memory_path=Path(environ.get("MEMORY_PATH") or DEFAULT_MEMORY_PATH).expanduser(),
            auto_link=_env_flag(environ, "AUTO_LINK"),
            embedding_model=environ.get("EMBEDDING_MODEL") or DEFAULT_EMBEDDING_MODEL,
            embedding_dimensions=dimensions,
            use_embedding_cache=_env_flag(environ, "EMBEDDING_CACHE", default=True),
            cache_dir=Path(environ.get("EMBEDDING_CACHE_DIR") or DEFAULT_CACHE_DIR).expanduser(),
            debug=_env_flag(environ, "MCP_DEBUG"),
        )
