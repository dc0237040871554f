"""
Configuration management for block memory stores.

The configuration is stored as a TOML file in the store directory.
It specifies which providers to use and their parameters, plus the
ingest and processing settings.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "blockmem.toml"
CONFIG_VERSION = 1
DEFAULT_STORE_DIRNAME = ".blockmem"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestConfig:
    """Where files are picked up from."""
    intake_dir: Optional[str] = None
    source_type: str = "file"


@dataclass
class ProcessingConfig:
    """Enrichment batch settings."""
    user_limit: int = 20
    artifact_limit: int = 10
    # None means retry forever
    max_attempts: Optional[int] = None
    processor_version: str = "v1"


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Provider configurations (None = not configured)
    embedding: Optional[ProviderConfig] = None
    completion: Optional[ProviderConfig] = None
    transcription: Optional[ProviderConfig] = None
    vision: Optional[ProviderConfig] = None
    object_store: ProviderConfig = field(default_factory=lambda: ProviderConfig("file"))

    ingest: IngestConfig = field(default_factory=IngestConfig)
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        return self.path / "blocks.db"

    @property
    def chroma_path(self) -> Path:
        return self.path / "chroma"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_store_path() -> Path:
    """Resolve the store directory from BLOCKMEM_STORE_PATH or the home default."""
    env = os.environ.get("BLOCKMEM_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / DEFAULT_STORE_DIRNAME


def detect_default_providers() -> dict[str, Optional[ProviderConfig]]:
    """
    Detect default providers from the environment.

    Priority for completion: Anthropic, then OpenAI. Embeddings,
    transcription and vision need OpenAI. Anything without a key is
    left unconfigured.
    """
    has_anthropic_key = bool(os.environ.get("ANTHROPIC_API_KEY"))
    has_openai_key = bool(
        os.environ.get("BLOCKMEM_OPENAI_API_KEY") or
        os.environ.get("OPENAI_API_KEY")
    )

    providers: dict[str, Optional[ProviderConfig]] = {
        "embedding": None,
        "completion": None,
        "transcription": None,
        "vision": None,
    }
    if has_openai_key:
        providers["embedding"] = ProviderConfig(
            "openai", {"model": "text-embedding-3-small", "dimensions": 512}
        )
        providers["transcription"] = ProviderConfig("openai")
        providers["vision"] = ProviderConfig("openai")

    if has_anthropic_key:
        providers["completion"] = ProviderConfig("anthropic")
    elif has_openai_key:
        providers["completion"] = ProviderConfig("openai")

    return providers


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with auto-detected defaults."""
    providers = detect_default_providers()
    return StoreConfig(
        path=store_path,
        embedding=providers["embedding"],
        completion=providers["completion"],
        transcription=providers["transcription"],
        vision=providers["vision"],
    )


def _parse_provider(section: Optional[dict]) -> Optional[ProviderConfig]:
    if not section or not section.get("name"):
        return None
    return ProviderConfig(
        name=section["name"],
        params={k: v for k, v in section.items() if k != "name"},
    )


def _provider_to_dict(p: ProviderConfig) -> dict:
    d = {"name": p.name}
    d.update(p.params)
    return d


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    ingest = data.get("ingest", {})
    processing = data.get("processing", {})
    max_attempts = processing.get("max_attempts")
    if max_attempts is not None and int(max_attempts) < 1:
        raise ValueError(f"processing.max_attempts must be >= 1, got {max_attempts}")

    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        embedding=_parse_provider(data.get("embedding")),
        completion=_parse_provider(data.get("completion")),
        transcription=_parse_provider(data.get("transcription")),
        vision=_parse_provider(data.get("vision")),
        object_store=_parse_provider(data.get("object_store")) or ProviderConfig("file"),
        ingest=IngestConfig(
            intake_dir=ingest.get("intake_dir"),
            source_type=ingest.get("source_type", "file"),
        ),
        processing=ProcessingConfig(
            user_limit=int(processing.get("user_limit", 20)),
            artifact_limit=int(processing.get("artifact_limit", 10)),
            max_attempts=int(max_attempts) if max_attempts is not None else None,
            processor_version=processing.get("processor_version", "v1"),
        ),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
    }
    for section in ("embedding", "completion", "transcription", "vision"):
        provider = getattr(config, section)
        if provider is not None:
            data[section] = _provider_to_dict(provider)
    data["object_store"] = _provider_to_dict(config.object_store)

    # TOML has no null; omit unset values
    ingest = {"source_type": config.ingest.source_type}
    if config.ingest.intake_dir:
        ingest["intake_dir"] = config.ingest.intake_dir
    data["ingest"] = ingest

    processing = {
        "user_limit": config.processing.user_limit,
        "artifact_limit": config.processing.artifact_limit,
        "processor_version": config.processing.processor_version,
    }
    if config.processing.max_attempts is not None:
        processing["max_attempts"] = config.processing.max_attempts
    data["processing"] = processing

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = create_default_config(store_path)
    save_config(config)
    return config
