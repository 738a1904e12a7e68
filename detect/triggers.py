"""Trigger loading, template capture and the active trigger set."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

import cv2
import numpy as np

from contracts import Frame, Roi, Trigger, TriggerName
from log_config.logger import get_logger

from .template_matcher import clip_roi

logger = get_logger(__name__)


@dataclass(frozen=True)
class TriggerConfig:
    """Configuration for one named trigger, before its template is loaded."""

    name: TriggerName
    roi: Roi
    threshold: float = 0.80
    template_path: Optional[Path] = None

    def load(self) -> Trigger:
        """Build a Trigger, reading the template image from disk.

        A missing or unreadable template produces an inert trigger.
        """
        template = load_template(self.template_path) if self.template_path else None
        if template is None:
            logger.warning(f"Trigger '{self.name.value}' has no usable template; it will never match")
        return Trigger(name=self.name.value, roi=self.roi, template=template, threshold=self.threshold)


def load_template(path: Union[str, Path]) -> Optional[np.ndarray]:
    template_path = Path(path)
    if not template_path.exists():
        logger.debug(f"Template file not found: {template_path}")
        return None
    image = cv2.imread(str(template_path), cv2.IMREAD_COLOR)
    if image is None or image.size == 0:
        logger.warning(f"Template file could not be decoded: {template_path}")
        return None
    return image


def capture_template(frame: Frame, roi: Roi, save_path: Union[str, Path]) -> Optional[np.ndarray]:
    """Crop the clipped ROI out of a frame and save it as a template image.

    Returns:
        The cropped template, or None when the ROI has no area inside the frame
    """
    if frame.is_empty:
        return None
    clipped = clip_roi(roi, frame.image)
    if clipped.area <= 0:
        logger.warning(f"Template ROI {roi.as_tuple()} lies outside the {frame.width}x{frame.height} frame")
        return None

    template = frame.image[clipped.y:clipped.y + clipped.height, clipped.x:clipped.x + clipped.width].copy()
    path = Path(save_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(path), template):
        logger.error(f"Failed to write template image to {path}")
        return None
    logger.info(f"Saved {clipped.width}x{clipped.height} template to {path}")
    return template


@dataclass(frozen=True)
class TriggerSet:
    """The three named triggers consulted by the matching loop.

    Instances are immutable; a configuration change builds a new set.
    """

    start: Trigger
    win: Trigger
    lose: Trigger

    @classmethod
    def empty(cls) -> "TriggerSet":
        roi = Roi(0, 0, 0, 0)
        return cls(
            start=Trigger(name=TriggerName.START.value, roi=roi),
            win=Trigger(name=TriggerName.WIN.value, roi=roi),
            lose=Trigger(name=TriggerName.LOSE.value, roi=roi),
        )

    @classmethod
    def from_configs(cls, configs: Dict[TriggerName, TriggerConfig]) -> "TriggerSet":
        default = cls.empty()
        loaded = {name: config.load() for name, config in configs.items()}
        return cls(
            start=loaded.get(TriggerName.START, default.start),
            win=loaded.get(TriggerName.WIN, default.win),
            lose=loaded.get(TriggerName.LOSE, default.lose),
        )

    def get(self, name: TriggerName) -> Trigger:
        return {
            TriggerName.START: self.start,
            TriggerName.WIN: self.win,
            TriggerName.LOSE: self.lose,
        }[name]

    def __iter__(self) -> Iterator[Trigger]:
        return iter((self.start, self.win, self.lose))


__all__ = ["TriggerConfig", "TriggerSet", "capture_template", "load_template"]
