"""Detection module."""

from .template_matcher import clip_roi, is_matched, match, match_all, prepare_template
from .triggers import TriggerConfig, TriggerSet, capture_template, load_template

__all__ = [
    "TriggerConfig",
    "TriggerSet",
    "capture_template",
    "clip_roi",
    "is_matched",
    "load_template",
    "match",
    "match_all",
    "prepare_template",
]
