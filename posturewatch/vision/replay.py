from __future__ import annotations
import asyncio
import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

from posturewatch.posture.pose_core import Pose

log = logging.getLogger(__name__)


def parse_pose_line(line: str) -> Optional[Pose]:
    """One JSON object per line: {"keypoints": {"nose": [x, y, conf], ...}, "score": 0.9}
    or null for a frame without a person."""
    data = json.loads(line)
    if data is None:
        return None
    return Pose.from_points(data.get("keypoints", {}), float(data.get("score", 1.0)))


class ReplayKeypointSource:
    """Serves recorded poses in order, optionally looping; useful without a camera."""

    def __init__(self, poses: Iterable[Optional[Pose]], loop: bool = False, delay_s: float = 0.0):
        self.poses: List[Optional[Pose]] = list(poses)
        self.loop = loop
        self.delay_s = delay_s
        self._idx = 0

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs) -> "ReplayKeypointSource":
        poses = []
        with open(path, "r", encoding="utf-8") as fh:
            for n, line in enumerate(fh, 1):
                if not line.strip():
                    continue
                try:
                    poses.append(parse_pose_line(line))
                except (ValueError, TypeError, AttributeError, IndexError) as e:
                    log.warning("skipping %s:%d: %s", path, n, e)
        return cls(poses, **kwargs)

    @property
    def exhausted(self) -> bool:
        return not self.loop and self._idx >= len(self.poses)

    async def next_pose(self) -> Optional[Pose]:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if not self.poses or self.exhausted:
            return None
        pose = self.poses[self._idx % len(self.poses)]
        self._idx += 1
        return pose

    def close(self) -> None:
        return None
