from __future__ import annotations
import logging
import os
import queue
import subprocess
import threading
from typing import Optional

from posturewatch.notify.alerts import Alert

log = logging.getLogger(__name__)


class SpeechAlertSink:
    """Reads alert bodies aloud on a background worker (macOS `say`, else pyttsx3).

    emit() only enqueues, so a slow speech engine never stalls the frame loop.
    A newer alert replaces any that has not been spoken yet.
    """

    def __init__(self, prefer_mac_say: bool = True, max_pending: int = 1):
        self.prefer_mac_say = prefer_mac_say and (os.uname().sysname == "Darwin")
        self.q: "queue.Queue[str]" = queue.Queue(maxsize=max_pending)
        self._stop = threading.Event()
        self._engine = None
        self._speaking = False
        self.worker = threading.Thread(target=self._run, daemon=True)
        self.worker.start()

    def emit(self, alert: Alert) -> None:
        if not alert.body:
            return
        while True:
            try:
                self.q.put_nowait(alert.body)
                return
            except queue.Full:
                try:
                    self.q.get_nowait()
                    self.q.task_done()
                except queue.Empty:
                    pass

    def is_speaking(self) -> bool:
        return bool(self._speaking or not self.q.empty())

    def shutdown(self, timeout: Optional[float] = 1.0):
        self._stop.set()
        self.worker.join(timeout)

    def close(self) -> None:
        self.shutdown()

    def _ensure_engine(self):
        if self._engine is None:
            import pyttsx3  # lazy import, initialisation is slow
            self._engine = pyttsx3.init()

    def _speak(self, text: str):
        if self.prefer_mac_say:
            subprocess.run(["say", text], check=False)
            return
        self._ensure_engine()
        self._engine.say(text)
        self._engine.runAndWait()

    def _run(self):
        while not self._stop.is_set():
            try:
                text = self.q.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._speaking = True
                self._speak(text)
            except Exception:
                log.exception("speech output failed")
            finally:
                self._speaking = False
                self.q.task_done()
