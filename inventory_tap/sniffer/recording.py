"""
Capture Recording — save raw frames to disk and load them back.

A recording is the input of ReplayBackend, so a session can be re-extracted
offline (or attached to a bug report) without the game running.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path

from .capture import RawFrame

log = logging.getLogger(__name__)

FORMAT_VERSION = 1


class CaptureRecording:
    """An ordered list of captured frames with a name and start time."""

    def __init__(self, name: str = ""):
        self.name = name or time.strftime("%Y%m%d_%H%M%S")
        self.frames: list[RawFrame] = []
        self._start_time: float = 0

    def add(self, frame: RawFrame) -> None:
        if not self._start_time:
            self._start_time = frame.timestamp
        self.frames.append(frame)

    @property
    def duration(self) -> float:
        if not self.frames:
            return 0.0
        return self.frames[-1].timestamp - self._start_time

    def save(self, path: str | Path) -> Path:
        """Save to a JSON file. A directory path gets '<name>.json' inside it."""
        out_path = Path(path)
        if out_path.is_dir():
            out_path = out_path / f"{self.name}.json"
        out_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "version": FORMAT_VERSION,
            "name": self.name,
            "start_time": self._start_time,
            "duration": self.duration,
            "frame_count": len(self.frames),
            "frames": [f.to_dict() for f in self.frames],
        }

        out_path.write_text(json.dumps(data, indent=2))
        log.info("Recording saved: %s (%d frames)", out_path, len(self.frames))
        return out_path

    @classmethod
    def load(cls, path: str | Path) -> CaptureRecording:
        """Load a saved recording. Raises OSError/ValueError/KeyError on bad files."""
        data = json.loads(Path(path).read_text())
        if data.get("version", FORMAT_VERSION) != FORMAT_VERSION:
            raise ValueError(f"unsupported recording version {data.get('version')}")

        recording = cls(name=data.get("name", ""))
        recording._start_time = data.get("start_time", 0)
        for f in data.get("frames", []):
            recording.frames.append(RawFrame.from_dict(f))
        return recording

    def summary(self) -> str:
        c2s = sum(1 for f in self.frames if f.direction == "C2S")
        s2c = len(self.frames) - c2s
        return "\n".join([
            f"Recording: {self.name}",
            f"  Frames: {len(self.frames)} total ({c2s} C2S, {s2c} S2C)",
            f"  Duration: {self.duration:.1f}s",
        ])
