"""Static model catalog exposed by ``GET /api/models``."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from polychat.llm.backend import AdapterRegistry


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    description: str
    provider: str


MODEL_CATALOG: tuple[ModelInfo, ...] = (
    ModelInfo(
        id="gemini-1.5-flash",
        name="Gemini 1.5 Flash",
        description="Google's fast and efficient multimodal model optimized for speed",
        provider="gemini",
    ),
    ModelInfo(
        id="claude-3-haiku",
        name="Claude 3 Haiku",
        description="Anthropic's fast and lightweight model, great for quick responses",
        provider="claude",
    ),
    ModelInfo(
        id="glm-4.5-flash",
        name="GLM 4.5 Flash",
        description="Zhipu's free general-purpose chat model",
        provider="glm",
    ),
)


def list_models(registry: AdapterRegistry | None = None) -> list[dict]:
    """Catalog entries as ``{id, name, description, isPrimary}`` dicts.

    With a *registry*, only registered models are listed and ``isPrimary``
    follows the registry; otherwise the first catalog entry is primary.
    """
    if registry is None:
        primary = MODEL_CATALOG[0].id
        available = {m.id for m in MODEL_CATALOG}
    else:
        primary = registry.primary_model_id
        available = set(registry.model_ids())

    return [
        {
            "id": m.id,
            "name": m.name,
            "description": m.description,
            "isPrimary": m.id == primary,
        }
        for m in MODEL_CATALOG
        if m.id in available
    ]
