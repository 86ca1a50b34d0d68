"""
Model registry — the static catalog of models the gateway can route to.

Loaded once at process start, read-only afterwards, so lookups need no
locking. The built-in catalog can be replaced with a YAML file
(MODEL_CATALOG_PATH) shaped like:

    models:
      - id: kimi
        name: Kimi K2 Instruct
        provider: groq
        upstream_endpoint_id: moonshotai/kimi-k2-instruct-0905
        context_window_tokens: 262144
        max_output_tokens: 16384
        supports_streaming: false
        supports_reasoning_trace: false
        price_per_1k_input: "0"
        price_per_1k_output: "0"
        capabilities: [Large context, Multi-turn chat]
        description: ...

A malformed catalog raises ConfigError and aborts startup.
"""

from __future__ import annotations

import enum
import logging
import pathlib
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from types import MappingProxyType

import yaml

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the model catalog cannot be loaded."""


class Provider(str, enum.Enum):
    GROQ = "groq"
    CHUTES = "chutes"
    CEREBRAS = "cerebras"
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"


@dataclass(frozen=True, slots=True)
class ModelDescriptor:
    """Everything the gateway knows about one routable model."""

    id: str
    name: str
    provider: Provider
    upstream_endpoint_id: str
    context_window_tokens: int
    max_output_tokens: int
    supports_streaming: bool = False
    supports_reasoning_trace: bool = False
    price_per_1k_input: Decimal = Decimal("0")
    price_per_1k_output: Decimal = Decimal("0")
    capabilities: frozenset[str] = field(default_factory=frozenset)
    description: str = ""

    @property
    def is_free(self) -> bool:
        return self.price_per_1k_input == 0 and self.price_per_1k_output == 0


def _model(
    id: str,
    name: str,
    provider: Provider,
    upstream: str,
    context: int,
    max_out: int,
    *,
    streaming: bool = False,
    reasoning: bool = False,
    capabilities: Iterable[str] = (),
    description: str = "",
) -> ModelDescriptor:
    return ModelDescriptor(
        id=id,
        name=name,
        provider=provider,
        upstream_endpoint_id=upstream,
        context_window_tokens=context,
        max_output_tokens=max_out,
        supports_streaming=streaming,
        supports_reasoning_trace=reasoning,
        capabilities=frozenset(capabilities),
        description=description,
    )


# ── Built-in catalog ────────────────────────────────────────
# All models are on free upstream plans, so prices are zero.
DEFAULT_MODELS: tuple[ModelDescriptor, ...] = (
    # Groq
    _model(
        "kimi", "Kimi K2 Instruct", Provider.GROQ,
        "moonshotai/kimi-k2-instruct-0905", 262144, 16384,
        capabilities=["Large context", "Multi-turn chat", "Multilingual", "Conversational AI"],
        description="Advanced conversational AI from Moonshot AI with 262K context window",
    ),
    _model(
        "qwen3", "Qwen 3 32B", Provider.GROQ,
        "qwen/qwen3-32b", 131072, 40960,
        reasoning=True,
        capabilities=["Advanced reasoning", "Long context", "Multilingual", "Math & Logic"],
        description="Powerful 32B parameter reasoning model from Alibaba Cloud",
    ),
    _model(
        "llama-4", "Llama 4 Maverick", Provider.GROQ,
        "meta-llama/llama-4-maverick-17b-128e-instruct", 131072, 8192,
        capabilities=["Code generation", "Reasoning", "Instruction following", "Efficiency"],
        description="Meta's latest Llama 4 model with enhanced capabilities",
    ),
    _model(
        "gpt-oss", "GPT OSS 20B", Provider.GROQ,
        "openai/gpt-oss-20b", 131072, 65536,
        capabilities=["Long output", "General purpose", "Chat", "Text generation"],
        description="Open-source GPT-style model with high token output capacity",
    ),
    _model(
        "gpt-oss-120b", "GPT OSS 120B", Provider.GROQ,
        "openai/gpt-oss-120b", 131072, 65536,
        capabilities=["Advanced reasoning", "Long output", "Complex tasks", "High quality"],
        description="Large-scale 120B parameter open-source GPT model for advanced tasks",
    ),
    # Chutes
    _model(
        "glm-4.5-air", "GLM-4.5 Air", Provider.CHUTES,
        "zai-org/GLM-4.5-Air", 131072, 8192,
        capabilities=["Fast inference", "Chat", "Multilingual", "Efficient"],
        description="Lightweight GLM model from Zhipu AI for efficient inference",
    ),
    # Cerebras
    _model(
        "zai-glm-4.6", "ZAI GLM-4.6", Provider.CEREBRAS,
        "zai-glm-4.6", 131072, 40960,
        streaming=True, reasoning=True,
        capabilities=["Chain-of-thought", "Advanced reasoning", "Long output", "Streaming"],
        description="Advanced reasoning model with chain-of-thought capabilities from Zhipu AI",
    ),
    # OpenRouter
    _model(
        "deepseek-r1-qwen3-8b", "DeepSeek R1 Qwen3 8B", Provider.OPENROUTER,
        "deepseek/deepseek-r1-0528-qwen3-8b:free", 131072, 8192,
        reasoning=True,
        capabilities=["Chain-of-thought", "Reasoning", "Problem solving", "Explainability"],
        description="Reasoning-focused model with thinking process extraction from DeepSeek",
    ),
    _model(
        "qwen3-coder", "Qwen3 Coder", Provider.OPENROUTER,
        "qwen/qwen3-coder:free", 131072, 8192,
        capabilities=["Code generation", "Code completion", "Debugging", "Multi-language"],
        description="Specialized coding model for software development from Alibaba",
    ),
    _model(
        "mistral-small-24b", "Mistral Small 24B", Provider.OPENROUTER,
        "mistralai/mistral-small-24b-instruct-2501:free", 131072, 8192,
        capabilities=["Chat", "Reasoning", "Instruction following", "Efficient"],
        description="Efficient Mistral model for general tasks",
    ),
    _model(
        "mistral-small-3.1-24b", "Mistral Small 3.1 24B", Provider.OPENROUTER,
        "mistralai/mistral-small-3.1-24b-instruct:free", 131072, 8192,
        capabilities=["Enhanced reasoning", "Chat", "General purpose", "Fast"],
        description="Latest Mistral model with improved performance",
    ),
    # Ollama (local)
    _model(
        "qwen3-local", "Qwen 3:1.7B (Local)", Provider.OLLAMA,
        "qwen3:1.7b", 8192, 8192,
        streaming=True,
        capabilities=["Privacy", "Local inference", "Fast", "No internet required"],
        description="Local privacy-focused model from Alibaba (requires Ollama)",
    ),
    _model(
        "glm-4.6", "GLM-4.6:Cloud (Local)", Provider.OLLAMA,
        "glm-4.6:cloud", 8192, 8192,
        streaming=True, reasoning=True,
        capabilities=["Privacy", "Chain-of-thought", "Reasoning", "Streaming"],
        description="Local reasoning model with chain-of-thought from Zhipu AI (requires Ollama)",
    ),
)


class ModelRegistry:
    """Read-only lookup over a fixed set of ModelDescriptors."""

    def __init__(self, descriptors: Iterable[ModelDescriptor]) -> None:
        by_id: dict[str, ModelDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in by_id:
                raise ConfigError(f"Duplicate model id '{descriptor.id}' in catalog")
            by_id[descriptor.id] = descriptor
        self._by_id = MappingProxyType(by_id)

    def by_id(self, model_id: str) -> ModelDescriptor | None:
        return self._by_id.get(model_id)

    def by_provider(self, provider: Provider | str) -> list[ModelDescriptor]:
        provider = Provider(provider)
        return [d for d in self._by_id.values() if d.provider is provider]

    def reasoning_capable(self) -> list[ModelDescriptor]:
        return [d for d in self._by_id.values() if d.supports_reasoning_trace]

    def all(self) -> list[ModelDescriptor]:
        return list(self._by_id.values())

    def provider_counts(self) -> dict[str, int]:
        counts = Counter(d.provider.value for d in self._by_id.values())
        return dict(counts)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._by_id


# ── YAML loading ────────────────────────────────────────────
_REQUIRED_FIELDS = (
    "id",
    "provider",
    "upstream_endpoint_id",
    "context_window_tokens",
    "max_output_tokens",
)


def _parse_decimal(value: object, field_name: str, model_id: str) -> Decimal:
    try:
        price = Decimal(str(value))
    except InvalidOperation as exc:
        raise ConfigError(f"Model {model_id}: {field_name} must be a decimal number") from exc
    if price < 0:
        raise ConfigError(f"Model {model_id}: {field_name} must be >= 0")
    return price


def _parse_entry(idx: int, entry: object) -> ModelDescriptor:
    if not isinstance(entry, dict):
        raise ConfigError(f"Model entry at index {idx} must be a mapping")

    missing = [name for name in _REQUIRED_FIELDS if name not in entry]
    if missing:
        raise ConfigError(f"Model entry at index {idx} is missing: {', '.join(missing)}")

    model_id = entry["id"]
    if not isinstance(model_id, str) or not model_id.strip():
        raise ConfigError(f"Model id at index {idx} must be a non-empty string")

    try:
        provider = Provider(entry["provider"])
    except ValueError as exc:
        raise ConfigError(f"Model {model_id}: unknown provider {entry['provider']!r}") from exc

    context = entry["context_window_tokens"]
    max_out = entry["max_output_tokens"]
    for name, value in (("context_window_tokens", context), ("max_output_tokens", max_out)):
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ConfigError(f"Model {model_id}: {name} must be a positive integer")

    capabilities = entry.get("capabilities") or []
    if not isinstance(capabilities, list):
        raise ConfigError(f"Model {model_id}: capabilities must be a list")

    return ModelDescriptor(
        id=model_id.strip(),
        name=str(entry.get("name") or model_id),
        provider=provider,
        upstream_endpoint_id=str(entry["upstream_endpoint_id"]),
        context_window_tokens=context,
        max_output_tokens=max_out,
        supports_streaming=bool(entry.get("supports_streaming", False)),
        supports_reasoning_trace=bool(entry.get("supports_reasoning_trace", False)),
        price_per_1k_input=_parse_decimal(entry.get("price_per_1k_input", 0), "price_per_1k_input", model_id),
        price_per_1k_output=_parse_decimal(entry.get("price_per_1k_output", 0), "price_per_1k_output", model_id),
        capabilities=frozenset(str(c) for c in capabilities),
        description=str(entry.get("description", "")),
    )


def load_model_catalog(path: pathlib.Path) -> list[ModelDescriptor]:
    """Parse a YAML catalog file into descriptors."""
    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Model catalog not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in model catalog {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError("Top-level catalog structure must be a mapping")

    entries = raw.get("models")
    if not isinstance(entries, list) or not entries:
        raise ConfigError("At least one model must be configured under 'models'")

    return [_parse_entry(idx, entry) for idx, entry in enumerate(entries)]


def build_registry(catalog_path: str | None = None) -> ModelRegistry:
    """Build the registry from a YAML file, or the built-in catalog."""
    if catalog_path:
        descriptors = load_model_catalog(pathlib.Path(catalog_path))
        logger.info("Loaded %d models from %s", len(descriptors), catalog_path)
    else:
        descriptors = list(DEFAULT_MODELS)
    return ModelRegistry(descriptors)
