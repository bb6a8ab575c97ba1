from __future__ import annotations
import asyncio
import logging
import threading
import time
from pathlib import Path
from typing import Dict, Optional, Union

import cv2
import mediapipe as mp
from mediapipe.tasks.python import BaseOptions
from mediapipe.tasks.python.vision import PoseLandmarker, PoseLandmarkerOptions, RunningMode

from posturewatch.posture.pose_core import JointId, Keypoint, Pose

log = logging.getLogger(__name__)

# BlazePose landmark indices
LANDMARK_INDEX: Dict[JointId, int] = {
    JointId.NOSE: 0,
    JointId.LEFT_EAR: 7,
    JointId.RIGHT_EAR: 8,
    JointId.LEFT_SHOULDER: 11,
    JointId.RIGHT_SHOULDER: 12,
}


class MediaPipeKeypointSource:
    """Webcam frames through MediaPipe's PoseLandmarker (single person, VIDEO mode).

    The camera and model are opened on first use; inference runs in a worker
    thread so the event loop stays free while a frame is processed.
    """

    def __init__(
        self,
        model_path: Union[str, Path],
        camera_index: int = 0,
        min_detection_confidence: float = 0.5,
        min_tracking_confidence: float = 0.5,
    ):
        self.model_path = Path(model_path)
        self.camera_index = camera_index
        self.min_detection_confidence = min_detection_confidence
        self.min_tracking_confidence = min_tracking_confidence
        self.cap = None
        self.landmarker: Optional[PoseLandmarker] = None
        self._last_ts_ms = 0
        # detect_for_video must not be entered concurrently
        self._lock = threading.Lock()

    def open(self) -> None:
        if self.landmarker is None:
            if not self.model_path.exists():
                raise FileNotFoundError(f"pose model not found: {self.model_path}")
            self.landmarker = PoseLandmarker.create_from_options(
                PoseLandmarkerOptions(
                    base_options=BaseOptions(model_asset_path=str(self.model_path)),
                    running_mode=RunningMode.VIDEO,
                    num_poses=1,
                    min_pose_detection_confidence=self.min_detection_confidence,
                    min_tracking_confidence=self.min_tracking_confidence,
                )
            )
        if self.cap is None:
            self.cap = cv2.VideoCapture(self.camera_index)
            if not self.cap.isOpened():
                self.cap = None
                raise RuntimeError(f"Webcam {self.camera_index} not available")
            log.info("camera %s opened", self.camera_index)

    def close(self) -> None:
        with self._lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None
            if self.landmarker is not None:
                self.landmarker.close()
                self.landmarker = None

    async def next_pose(self) -> Optional[Pose]:
        return await asyncio.to_thread(self.read_pose)

    def read_pose(self) -> Optional[Pose]:
        with self._lock:
            self.open()
            ok, frame = self.cap.read()
            if not ok:
                return None
            h, w = frame.shape[:2]
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)
            # VIDEO mode needs strictly increasing timestamps
            ts_ms = max(int(time.monotonic() * 1000), self._last_ts_ms + 1)
            self._last_ts_ms = ts_ms
            result = self.landmarker.detect_for_video(mp_image, ts_ms)

        if not result.pose_landmarks:
            return None
        return landmarks_to_pose(result.pose_landmarks[0], w, h)


def landmarks_to_pose(landmarks, width: int, height: int) -> Pose:
    """Normalized landmarks → pixel-space Pose of the joints we use (visibility as confidence)."""
    kps = []
    for joint, idx in LANDMARK_INDEX.items():
        if idx >= len(landmarks):
            continue
        lm = landmarks[idx]
        vis = getattr(lm, "visibility", None)
        conf = float(vis) if vis is not None else 1.0
        kps.append(Keypoint(joint, float(lm.x) * width, float(lm.y) * height, max(0.0, min(1.0, conf))))
    score = sum(k.confidence for k in kps) / len(kps) if kps else 0.0
    return Pose(tuple(kps), score)
