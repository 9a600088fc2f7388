"""Configuration loading from environment variables and keepsake.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_USER_DIR = Path.home() / ".claude" / "memory"
_CONFIG_FILENAME = "keepsake.toml"

HOOK_KINDS = ("Read", "Edit", "Write", "Bash")


@dataclass
class ScopeConfig:
    """Where each scope lives on disk."""

    user_dir: Path = _DEFAULT_USER_DIR
    default: str | None = None
    enterprise_enabled: bool = False
    enterprise_path: Path | None = None


@dataclass
class SearchConfig:
    """Hybrid search weighting and bounds."""

    lexical_weight: float = 0.5
    semantic_weight: float = 0.5
    threshold: float = 0.1
    min_score: float = 0.0
    limit: int = 20
    timeout: float = 10.0
    batch_size: int = 64


@dataclass
class IndexConfig:
    """Index rebuild bounds."""

    timeout: float = 120.0
    batch_size: int = 64


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration."""

    provider: str = "ollama"
    model: str = "embeddinggemma:latest"
    base_url: str = "http://localhost:11434"
    timeout: float = 15.0


@dataclass
class LinkingConfig:
    """Auto-link parameters."""

    top_k: int = 3
    threshold: float = 0.35


@dataclass
class TypeInjectionConfig:
    """Per memory type injection gate."""

    enabled: bool = True
    threshold: float = 0.3
    limit: int = 3


def _default_types() -> dict[str, TypeInjectionConfig]:
    return {
        "gotcha": TypeInjectionConfig(enabled=True, threshold=0.2, limit=5),
        "decision": TypeInjectionConfig(enabled=True, threshold=0.35, limit=3),
        "learning": TypeInjectionConfig(enabled=True, threshold=0.4, limit=2),
        "hub": TypeInjectionConfig(enabled=False, threshold=0.5, limit=1),
        "artifact": TypeInjectionConfig(enabled=False, threshold=0.5, limit=1),
    }


def _default_multipliers() -> dict[str, dict[str, float]]:
    # Code-editing hooks lift gotchas and decisions; read-only hooks leave them be.
    return {
        "gotcha": {"Read": 1.0, "Edit": 1.5, "Write": 1.5, "Bash": 1.2},
        "decision": {"Read": 1.0, "Edit": 1.3, "Write": 1.3, "Bash": 1.0},
        "learning": {"Read": 1.0, "Edit": 1.1, "Write": 1.1, "Bash": 1.0},
        "hub": {"Read": 1.0, "Edit": 0.8, "Write": 0.8, "Bash": 0.8},
        "artifact": {"Read": 1.0, "Edit": 1.0, "Write": 1.0, "Bash": 1.0},
    }


@dataclass
class InjectionConfig:
    """Context injection: type gates plus hook multipliers."""

    enabled: bool = True
    total_limit: int = 10
    types: dict[str, TypeInjectionConfig] = field(default_factory=_default_types)
    multipliers: dict[str, dict[str, float]] = field(default_factory=_default_multipliers)


@dataclass
class KeepsakeConfig:
    """Top-level keepsake configuration."""

    scopes: ScopeConfig = field(default_factory=ScopeConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    linking: LinkingConfig = field(default_factory=LinkingConfig)
    injection: InjectionConfig = field(default_factory=InjectionConfig)
    log_level: str = "INFO"


def _load_injection(data: dict) -> InjectionConfig:
    config = InjectionConfig()
    config.enabled = bool(data.get("enabled", config.enabled))
    config.total_limit = max(1, int(data.get("total_limit", config.total_limit)))

    for type_name, values in data.get("types", {}).items():
        base = config.types.get(type_name, TypeInjectionConfig())
        config.types[type_name] = TypeInjectionConfig(
            enabled=bool(values.get("enabled", base.enabled)),
            threshold=min(1.0, max(0.0, float(values.get("threshold", base.threshold)))),
            limit=max(1, int(values.get("limit", base.limit))),
        )

    for type_name, hooks in data.get("multipliers", {}).items():
        table = config.multipliers.setdefault(type_name, {})
        for hook, value in hooks.items():
            table[hook] = float(value)
    return config


def load_config(config_path: Path | None = None) -> KeepsakeConfig:
    """Load configuration from environment variables and optional keepsake.toml.

    Priority: environment variables > keepsake.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.keepsake/
        for candidate in [
            Path.cwd() / _CONFIG_FILENAME,
            Path.home() / ".keepsake" / _CONFIG_FILENAME,
        ]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    scope_data = file_data.get("scopes", {})
    search_data = file_data.get("search", {})
    embedding_data = file_data.get("embedding", {})
    linking_data = file_data.get("linking", {})
    index_data = file_data.get("index", {})

    enterprise_path = (
        os.getenv("KEEPSAKE_ENTERPRISE_PATH")
        or os.getenv("CLAUDE_MEMORY_ENTERPRISE_PATH")
        or scope_data.get("enterprise_path")
    )

    config = KeepsakeConfig(
        scopes=ScopeConfig(
            user_dir=Path(
                os.getenv("KEEPSAKE_USER_DIR", scope_data.get("user_dir", str(_DEFAULT_USER_DIR)))
            ).expanduser(),
            default=scope_data.get("default"),
            enterprise_enabled=bool(scope_data.get("enterprise_enabled", False)),
            enterprise_path=Path(enterprise_path).expanduser() if enterprise_path else None,
        ),
        search=SearchConfig(
            lexical_weight=float(search_data.get("lexical_weight", 0.5)),
            semantic_weight=float(search_data.get("semantic_weight", 0.5)),
            threshold=float(search_data.get("threshold", 0.1)),
            min_score=float(search_data.get("min_score", 0.0)),
            limit=int(search_data.get("limit", 20)),
            timeout=float(os.getenv("KEEPSAKE_SEARCH_TIMEOUT", search_data.get("timeout", 10.0))),
            batch_size=int(search_data.get("batch_size", 64)),
        ),
        index=IndexConfig(
            timeout=float(index_data.get("timeout", 120.0)),
            batch_size=int(index_data.get("batch_size", 64)),
        ),
        embedding=EmbeddingConfig(
            provider=os.getenv("KEEPSAKE_EMBEDDING", embedding_data.get("provider", "ollama")),
            model=os.getenv(
                "KEEPSAKE_EMBEDDING_MODEL", embedding_data.get("model", "embeddinggemma:latest")
            ),
            base_url=os.getenv(
                "KEEPSAKE_OLLAMA_URL", embedding_data.get("base_url", "http://localhost:11434")
            ),
            timeout=float(embedding_data.get("timeout", 15.0)),
        ),
        linking=LinkingConfig(
            top_k=int(linking_data.get("top_k", 3)),
            threshold=float(linking_data.get("threshold", 0.35)),
        ),
        injection=_load_injection(file_data.get("injection", {})),
        log_level=os.getenv("KEEPSAKE_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
