"""Single-template normalized correlation matching."""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional, Union

import cv2
import numpy as np

from contracts import Frame, Roi, Trigger, TriggerScore

ImageLike = Union[Frame, np.ndarray, None]


def _as_image(frame: ImageLike) -> Optional[np.ndarray]:
    if isinstance(frame, Frame):
        return frame.image
    return frame


def clip_roi(roi: Roi, image: np.ndarray) -> Roi:
    """Clip a ROI to the bounds of an image."""
    height, width = image.shape[:2]
    return roi.clip(width, height)


def _match_channels(template: np.ndarray, target: np.ndarray) -> np.ndarray:
    """Convert the template to the channel layout and dtype of the target."""
    target_channels = 1 if target.ndim == 2 else target.shape[2]
    template_channels = 1 if template.ndim == 2 else template.shape[2]

    if template_channels != target_channels:
        if target_channels == 1:
            code = cv2.COLOR_BGRA2GRAY if template_channels == 4 else cv2.COLOR_BGR2GRAY
        elif target_channels == 3:
            code = cv2.COLOR_BGRA2BGR if template_channels == 4 else cv2.COLOR_GRAY2BGR
        else:
            code = cv2.COLOR_BGR2BGRA if template_channels == 3 else cv2.COLOR_GRAY2BGRA
        template = cv2.cvtColor(template, code)

    if template.dtype != target.dtype:
        template = template.astype(target.dtype)
    return template


def prepare_template(template: np.ndarray, max_width: int, max_height: int) -> Optional[np.ndarray]:
    """Downscale the template to fit within max_width x max_height.

    Aspect ratio is preserved. Templates that already fit are returned as-is.

    Returns:
        Template that fits, or None if scaling collapses it to zero size
    """
    t_height, t_width = template.shape[:2]
    if t_width <= max_width and t_height <= max_height:
        return template

    scale = min(max_width / t_width, max_height / t_height)
    new_width = int(t_width * scale)
    new_height = int(t_height * scale)
    if new_width <= 0 or new_height <= 0:
        return None

    resized = cv2.resize(template, (new_width, new_height), interpolation=cv2.INTER_AREA)
    if resized.shape[1] > max_width or resized.shape[0] > max_height:
        return None
    return resized


def match(frame: ImageLike, roi: Roi, template: Optional[np.ndarray]) -> float:
    """Best TM_CCOEFF_NORMED score of the template inside the ROI.

    Returns 0.0 for an empty frame, a missing template, or a ROI with no
    area after clipping. The result is clamped to [0, 1].
    """
    image = _as_image(frame)
    if image is None or image.size == 0:
        return 0.0
    if template is None or template.size == 0:
        return 0.0

    clipped = clip_roi(roi, image)
    if clipped.area <= 0:
        return 0.0

    region = image[clipped.y:clipped.y + clipped.height, clipped.x:clipped.x + clipped.width]
    prepared = prepare_template(template, clipped.width, clipped.height)
    if prepared is None or prepared.size == 0:
        return 0.0
    prepared = _match_channels(prepared, region)

    result = cv2.matchTemplate(region, prepared, cv2.TM_CCOEFF_NORMED)
    # Zero-variance windows can produce inf/nan
    result = np.where(np.isfinite(result), result, 0.0).astype(np.float32)
    _, max_val, _, _ = cv2.minMaxLoc(result)
    return float(min(max(max_val, 0.0), 1.0))


def is_matched(frame: ImageLike, roi: Roi, template: Optional[np.ndarray], threshold: float) -> bool:
    return match(frame, roi, template) >= threshold


def match_all(
    frame: ImageLike,
    triggers: Union[Mapping[str, Trigger], Iterable[Trigger]],
) -> Dict[str, TriggerScore]:
    """Score every trigger against one frame.

    Inert triggers score 0.0 and are never matched.
    """
    items = triggers.values() if isinstance(triggers, Mapping) else triggers
    image = _as_image(frame)
    results: Dict[str, TriggerScore] = {}
    for trigger in items:
        name = trigger.name.value if hasattr(trigger.name, "value") else str(trigger.name)
        if not trigger.is_armed:
            results[name] = TriggerScore(score=0.0, matched=False)
            continue
        score = match(image, trigger.roi, trigger.template)
        results[name] = TriggerScore(score=score, matched=score >= trigger.threshold)
    return results


__all__ = ["clip_roi", "is_matched", "match", "match_all", "prepare_template"]
