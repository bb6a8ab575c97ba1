from __future__ import annotations
import pytest

from posturewatch.data.db import KeyValueStore
from posturewatch.posture.pose_core import Pose

UPRIGHT = {
    "left_shoulder": (100.0, 200.0),
    "right_shoulder": (300.0, 200.0),
    "left_ear": (100.0, 100.0),
    "right_ear": (300.0, 100.0),
    "nose": (200.0, 100.0),
}


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeSource:
    """Serves a fixed pose; swap `pose` to change what the next read sees."""

    def __init__(self, pose=None):
        self.pose = pose
        self.reads = 0
        self.closed = False

    async def next_pose(self):
        self.reads += 1
        return self.pose

    def close(self):
        self.closed = True


def build_pose(conf: float = 0.9, drop=(), **overrides) -> Pose:
    points = dict(UPRIGHT)
    points.update(overrides)
    return Pose.from_points(
        {name: (x, y, conf) for name, (x, y) in points.items() if name not in drop},
        score=conf,
    )


@pytest.fixture
def make_pose():
    return build_pose


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv(tmp_path):
    store = KeyValueStore(tmp_path / "posturewatch.db")
    yield store
    store.close()
