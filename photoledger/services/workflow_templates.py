"""Built-in workflow templates."""

from __future__ import annotations

from typing import Dict, List

from photoledger.models.workflow import WorkflowConfig

_TEMPLATES: List[dict] = [
    {
        "workflow_id": "funko-basic",
        "name": "Basic Funko Pop",
        "description": "Single step Funko Pop creation",
        "steps": [
            {"id": "funko", "display_name": "Creating Funko Pop", "config": {"mode": "pop_figure"}},
        ],
    },
    {
        "workflow_id": "funko-enhanced",
        "name": "Enhanced Funko Pop",
        "description": "Funko Pop with 4x upscaling for better quality",
        "steps": [
            {"id": "funko", "display_name": "Creating Funko Pop", "config": {"mode": "pop_figure"}},
            {"id": "upscale", "display_name": "Upscaling to 4K", "config": {"mode": "upscale", "outscale": 4}},
        ],
    },
    {
        "workflow_id": "funko-premium",
        "name": "Premium Funko Pop",
        "description": "Funko Pop with upscaling and AI enhancement",
        "steps": [
            {"id": "remove-bg", "display_name": "Removing Background", "config": {"mode": "remove_background"}},
            {"id": "funko", "display_name": "Creating Funko Pop", "config": {"mode": "pop_figure"}},
            {"id": "upscale", "display_name": "Upscaling to 4K", "config": {"mode": "upscale", "outscale": 4}},
            {"id": "enhance", "display_name": "AI Enhancement", "config": {"mode": "enhance"}},
        ],
    },
    {
        "workflow_id": "pixel-upscale",
        "name": "Pixel Art + Upscale",
        "description": "Convert to pixel art then upscale for sharp details",
        "steps": [
            {"id": "pixel", "display_name": "Creating Pixel Art", "config": {"mode": "pixel_art_gamer"}},
            {"id": "upscale", "display_name": "Upscaling", "config": {"mode": "upscale", "outscale": 2}},
        ],
    },
    {
        "workflow_id": "headshot-enhance",
        "name": "Professional Headshot Enhanced",
        "description": "Create professional headshot with enhancement",
        "steps": [
            {"id": "headshot", "display_name": "Creating Headshot", "config": {"mode": "professional_headshots"}},
            {"id": "enhance", "display_name": "Enhancing Quality", "config": {"mode": "enhance"}},
        ],
    },
]

WORKFLOW_TEMPLATES: Dict[str, WorkflowConfig] = {
    t["workflow_id"]: WorkflowConfig.model_validate(t) for t in _TEMPLATES
}


def get_workflow_template(workflow_id: str) -> WorkflowConfig:
    """Raises KeyError for an unknown id."""
    try:
        return WORKFLOW_TEMPLATES[workflow_id]
    except KeyError:
        raise KeyError(f"unknown workflow template {workflow_id!r}") from None


def list_workflow_templates() -> List[WorkflowConfig]:
    return list(WORKFLOW_TEMPLATES.values())
