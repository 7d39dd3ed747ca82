"""
PromptLens Configuration System
===============================

Loads and manages configuration from promptlens.yaml with environment
variable overrides.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "promptlens.yaml"


# =============================================================================
# Configuration Data Classes
# =============================================================================

@dataclass
class LLMConfig:
    """LLM completion service configuration."""
    backend: str = "ollama"  # ollama | openai
    model: str = "qwen2.5:7b"
    base_url: str = "http://localhost:11434"
    api_key: Optional[str] = None  # For cloud backends
    max_tokens: int = 512
    timeout_ms: int = 2500
    json_mode: bool = True
    supports_parallel: bool = True


@dataclass
class CacheConfig:
    """Two-tier cache configuration."""
    namespace: str = "enhancement"
    fast_max_size: int = 500
    ttl: float = 300.0  # Fast tier, seconds
    shared_ttl: float = 3600.0  # Shared tier, seconds
    redis_url: Optional[str] = None  # None = fast tier only
    context_window: int = 100
    sweep_interval: float = 60.0


@dataclass
class CoordinatorConfig:
    """Client-side request coordination."""
    debounce_ms: int = 150
    timeout_ms: int = 3000


@dataclass
class GenerationConfig:
    """Generation strategy configuration."""
    contrastive_enabled: bool = True
    batch_sizes: List[int] = field(default_factory=lambda: [4, 4, 4])
    temperatures: List[float] = field(default_factory=lambda: [0.4, 0.5, 0.6])
    standard_count: int = 6
    standard_temperature: float = 0.7
    latency_budget_ms: int = 2000


@dataclass
class FilterConfig:
    """Sanitize / diversity / alignment thresholds."""
    similarity_threshold: float = 0.7
    max_chars: int = 80
    max_words: int = 12
    min_accepted: int = 1
    max_suggestions: int = 12


@dataclass
class FallbackConfig:
    """Canned descriptors, merged over the built-in sets per category."""
    enabled: bool = True
    descriptors: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class WebConfig:
    """HTTP transport configuration."""
    host: str = "127.0.0.1"
    port: int = 8420
    cors_origins: List[str] = field(default_factory=list)


@dataclass
class PromptLensConfig:
    """Root configuration container."""
    llm: LLMConfig = field(default_factory=LLMConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    filters: FilterConfig = field(default_factory=FilterConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    web: WebConfig = field(default_factory=WebConfig)
    version: str = "0.3.0"


# =============================================================================
# Configuration Loader
# =============================================================================

def find_config_file(start_path: Optional[Path] = None) -> Optional[Path]:
    """
    Find promptlens.yaml by searching upward from start_path.

    Search order:
    1. start_path / promptlens.yaml
    2. start_path / .promptlens / promptlens.yaml
    3. Parent directories (recursive)
    4. ~/.config/promptlens/promptlens.yaml
    5. /etc/promptlens/promptlens.yaml
    """
    if start_path is None:
        start_path = Path.cwd()

    current = Path(start_path).resolve()
    for _ in range(10):  # Max 10 levels up
        for candidate in (current / CONFIG_FILENAME, current / ".promptlens" / CONFIG_FILENAME):
            if candidate.exists():
                return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent

    user_config = Path.home() / ".config" / "promptlens" / CONFIG_FILENAME
    if user_config.exists():
        return user_config

    system_config = Path("/etc/promptlens") / CONFIG_FILENAME
    if system_config.exists():
        return system_config

    return None


def load_config(config_path: Optional[Path] = None) -> PromptLensConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Environment variables override config file values:
    - PROMPTLENS_LLM_BACKEND -> llm.backend
    - PROMPTLENS_LLM_MODEL -> llm.model
    - PROMPTLENS_LLM_BASE_URL -> llm.base_url
    - PROMPTLENS_LLM_API_KEY -> llm.api_key
    - PROMPTLENS_REDIS_URL -> cache.redis_url
    - PROMPTLENS_DEBOUNCE_MS -> coordinator.debounce_ms
    - PROMPTLENS_TIMEOUT_MS -> coordinator.timeout_ms
    - PROMPTLENS_LOG_LEVEL -> logging.level
    """
    config = PromptLensConfig()

    if config_path is None:
        config_path = find_config_file()

    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
            config = _parse_config_dict(data)
        except (OSError, yaml.YAMLError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Failed to load config: {e}, using defaults")
    else:
        logger.info("No config file found, using defaults")

    config = _apply_env_overrides(config)
    _validate_config(config)
    return config


def _section(data: Dict[str, Any], cls, name: str):
    """Build a section dataclass from a dict, keeping defaults for missing keys."""
    raw = data.get(name) or {}
    if not isinstance(raw, dict):
        raise TypeError(f"Section '{name}' must be a mapping")
    known = cls.__dataclass_fields__
    unknown = set(raw) - set(known)
    if unknown:
        logger.warning(f"Ignoring unknown keys in '{name}': {sorted(unknown)}")
    return cls(**{k: v for k, v in raw.items() if k in known})


def _parse_config_dict(data: Dict[str, Any]) -> PromptLensConfig:
    """Parse configuration dictionary into PromptLensConfig."""
    config = PromptLensConfig(
        llm=_section(data, LLMConfig, "llm"),
        cache=_section(data, CacheConfig, "cache"),
        coordinator=_section(data, CoordinatorConfig, "coordinator"),
        generation=_section(data, GenerationConfig, "generation"),
        filters=_section(data, FilterConfig, "filters"),
        fallback=_section(data, FallbackConfig, "fallback"),
        logging=_section(data, LoggingConfig, "logging"),
        web=_section(data, WebConfig, "web"),
    )
    config.version = str(data.get("version", config.version))
    return config


def _apply_env_overrides(config: PromptLensConfig) -> PromptLensConfig:
    """Apply environment variable overrides to config."""
    if os.environ.get("PROMPTLENS_LLM_BACKEND"):
        config.llm.backend = os.environ["PROMPTLENS_LLM_BACKEND"]

    if os.environ.get("PROMPTLENS_LLM_MODEL"):
        config.llm.model = os.environ["PROMPTLENS_LLM_MODEL"]

    if os.environ.get("PROMPTLENS_LLM_BASE_URL"):
        config.llm.base_url = os.environ["PROMPTLENS_LLM_BASE_URL"]

    if os.environ.get("PROMPTLENS_LLM_API_KEY"):
        config.llm.api_key = os.environ["PROMPTLENS_LLM_API_KEY"]

    if os.environ.get("PROMPTLENS_REDIS_URL"):
        config.cache.redis_url = os.environ["PROMPTLENS_REDIS_URL"]

    for var, attr in (("PROMPTLENS_DEBOUNCE_MS", "debounce_ms"), ("PROMPTLENS_TIMEOUT_MS", "timeout_ms")):
        if os.environ.get(var):
            try:
                setattr(config.coordinator, attr, int(os.environ[var]))
            except ValueError:
                logger.warning(f"Ignoring non-integer {var}={os.environ[var]!r}")

    if os.environ.get("PROMPTLENS_LOG_LEVEL"):
        config.logging.level = os.environ["PROMPTLENS_LOG_LEVEL"].upper()

    return config


def _validate_config(config: PromptLensConfig) -> None:
    """Validate configuration, log warnings and clamp bad values."""
    if config.llm.backend not in ("ollama", "openai"):
        logger.warning(f"Unknown LLM backend '{config.llm.backend}', defaulting to 'ollama'")
        config.llm.backend = "ollama"

    gen = config.generation
    if len(gen.batch_sizes) != len(gen.temperatures) or not gen.batch_sizes:
        logger.warning("generation.batch_sizes and temperatures differ in length, using [4,4,4] @ [0.4,0.5,0.6]")
        gen.batch_sizes = [4, 4, 4]
        gen.temperatures = [0.4, 0.5, 0.6]
    if sum(gen.batch_sizes) > 12:
        logger.warning(f"Contrastive batches request {sum(gen.batch_sizes)} candidates, results are capped at 12")
    if not 4 <= gen.standard_count <= 8:
        clamped = min(8, max(4, gen.standard_count))
        logger.warning(f"generation.standard_count {gen.standard_count} outside 4-8, using {clamped}")
        gen.standard_count = clamped

    if not 0.0 < config.filters.similarity_threshold <= 1.0:
        logger.warning(f"filters.similarity_threshold {config.filters.similarity_threshold} invalid, using 0.7")
        config.filters.similarity_threshold = 0.7
    if config.filters.max_suggestions > 12:
        config.filters.max_suggestions = 12

    if config.coordinator.debounce_ms < 0:
        config.coordinator.debounce_ms = 0
    if config.coordinator.timeout_ms <= 0:
        logger.warning("coordinator.timeout_ms must be positive, using 3000")
        config.coordinator.timeout_ms = 3000

    if config.cache.fast_max_size < 1:
        logger.warning(f"cache.fast_max_size {config.cache.fast_max_size} must be at least 1, using 1")
        config.cache.fast_max_size = 1
    if config.cache.shared_ttl < config.cache.ttl:
        logger.warning("cache.shared_ttl shorter than fast tier ttl, raising it to match")
        config.cache.shared_ttl = config.cache.ttl


def save_config(config: PromptLensConfig, path: Path) -> None:
    """
    Save configuration to YAML file. API keys are never written.
    """
    data = {
        "version": config.version,
        "llm": {
            "backend": config.llm.backend,
            "model": config.llm.model,
            "base_url": config.llm.base_url,
            "max_tokens": config.llm.max_tokens,
            "timeout_ms": config.llm.timeout_ms,
            "json_mode": config.llm.json_mode,
            "supports_parallel": config.llm.supports_parallel,
        },
        "cache": {
            "namespace": config.cache.namespace,
            "fast_max_size": config.cache.fast_max_size,
            "ttl": config.cache.ttl,
            "shared_ttl": config.cache.shared_ttl,
            "redis_url": config.cache.redis_url,
            "context_window": config.cache.context_window,
            "sweep_interval": config.cache.sweep_interval,
        },
        "coordinator": {
            "debounce_ms": config.coordinator.debounce_ms,
            "timeout_ms": config.coordinator.timeout_ms,
        },
        "generation": {
            "contrastive_enabled": config.generation.contrastive_enabled,
            "batch_sizes": list(config.generation.batch_sizes),
            "temperatures": list(config.generation.temperatures),
            "standard_count": config.generation.standard_count,
            "standard_temperature": config.generation.standard_temperature,
            "latency_budget_ms": config.generation.latency_budget_ms,
        },
        "filters": {
            "similarity_threshold": config.filters.similarity_threshold,
            "max_chars": config.filters.max_chars,
            "max_words": config.filters.max_words,
            "min_accepted": config.filters.min_accepted,
            "max_suggestions": config.filters.max_suggestions,
        },
        "fallback": {
            "enabled": config.fallback.enabled,
            "descriptors": {k: list(v) for k, v in config.fallback.descriptors.items()},
        },
        "logging": {
            "level": config.logging.level,
            "format": config.logging.format,
        },
        "web": {
            "host": config.web.host,
            "port": config.web.port,
            "cors_origins": list(config.web.cors_origins),
        },
    }

    if config.llm.api_key:
        data["llm"]["api_key"] = "*** SET VIA ENVIRONMENT VARIABLE ***"

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    logger.info(f"Configuration saved to: {path}")


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure root logging from LoggingConfig."""
    config = config or LoggingConfig()
    level = getattr(logging, config.level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=config.format)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


# =============================================================================
# Global Config Instance
# =============================================================================

_global_config: Optional[PromptLensConfig] = None


def get_config() -> PromptLensConfig:
    """Get the global configuration instance (lazy-loaded)."""
    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config

