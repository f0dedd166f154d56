"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path

from docrecall.embedding.encoder import DEFAULT_LOCAL_MODEL, DEFAULT_REMOTE_MODEL

ENV_PREFIX = "DOCRECALL_"


def _get_default_data_dir() -> Path:
    """Prefer a local ``data/`` folder when running from a checkout."""
    local_dir = Path("data")
    if local_dir.exists():
        return local_dir
    return Path.home() / ".docrecall"


@dataclass(slots=True)
class AppConfig:
    data_dir: Path | None = None
    model_name: str = DEFAULT_LOCAL_MODEL
    remote_model_name: str = DEFAULT_REMOTE_MODEL
    chunk_size: int = 4000
    chunk_overlap: int = 200
    batch_size: int = 100
    similarity_threshold: float = 0.995
    openai_api_key: str | None = None
    openai_organization: str | None = None
    use_azure_openai: bool = False
    azure_openai_api_key: str | None = None
    azure_openai_endpoint: str | None = None
    azure_openai_embeddings_id: str | None = None

    def __post_init__(self) -> None:
        if self.data_dir is None:
            self.data_dir = _get_default_data_dir()

    @property
    def store_dir(self) -> Path:
        return Path(self.data_dir) / "vector_store"

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / "docrecall.db"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides) -> "AppConfig":
        """Build a config from ``DOCRECALL_*`` and provider environment variables.

        Keyword overrides that are not ``None`` win over the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        for item in fields(cls):
            raw = env.get(ENV_PREFIX + item.name.upper())
            if raw is not None:
                values[item.name] = raw

        # Provider variables keep their conventional names.
        aliases = {
            "batch_size": "EMBEDDING_BATCH_SIZE",
            "openai_api_key": "OPENAI_API_KEY",
            "openai_organization": "OPENAI_ORGANIZATION",
            "azure_openai_api_key": "AZURE_OPENAI_API_KEY",
            "azure_openai_endpoint": "AZURE_OPENAI_ENDPOINT",
            "azure_openai_embeddings_id": "AZURE_OPENAI_EMBEDDINGS_ID",
        }
        for name, var in aliases.items():
            if name not in values and env.get(var):
                values[name] = env[var]

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**_coerce(values))


def _coerce(values: dict[str, object]) -> dict[str, object]:
    converters = {
        "data_dir": Path,
        "chunk_size": int,
        "chunk_overlap": int,
        "batch_size": int,
        "similarity_threshold": float,
        "use_azure_openai": _parse_bool,
    }
    coerced = {}
    for key, value in values.items():
        convert = converters.get(key)
        coerced[key] = convert(value) if convert and isinstance(value, str) else value
    return coerced


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")
