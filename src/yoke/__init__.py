"""Yoke - autonomous loop controller for a chat-based AI coding assistant."""

from importlib.metadata import PackageNotFoundError, version

from yoke.config import YokeConfig, load_config
from yoke.orchestrator import LoopOrchestrator, build_orchestrator
from yoke.schemas import LoopStatus, ModelId, StopReason, TaskCategory

__all__ = [
    "LoopOrchestrator",
    "LoopStatus",
    "ModelId",
    "StopReason",
    "TaskCategory",
    "YokeConfig",
    "build_orchestrator",
    "load_config",
]

try:
    __version__ = version("yoke")
except PackageNotFoundError:
    __version__ = "0.0.0"
