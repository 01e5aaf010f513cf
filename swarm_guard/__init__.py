"""
swarm-guard
===========
Health-and-resource control plane for LLM agent swarms: loop detection,
token-trend monitoring with budget reallocation, and trajectory compression.
"""

from .budget import BudgetAllocation, BudgetConfig, ResourceManager, SwarmBudget, TurnStats
from .compressor import (
    CompressedTrajectory,
    CompressorConfig,
    SummaryGroup,
    TrajectoryCompressor,
    TrajectoryEntry,
    TrajectoryLog,
)
from .detector import LoopDetection, LoopDetector, LoopDetectorConfig, LoopType
from .monitor import Alert, MonitorConfig, PredictedOverflow, TokenVariance, TrendMonitor
from .safeguard import SwarmGuard, SwarmGuardConfig, TurnReport
from .similarity import EmbeddingSimilarity, HashingEmbedder, JaccardSimilarity, SimilarityProvider
from .store import JsonStateStore, StateStoreError

__all__ = [
    "Alert",
    "BudgetAllocation",
    "BudgetConfig",
    "CompressedTrajectory",
    "CompressorConfig",
    "EmbeddingSimilarity",
    "HashingEmbedder",
    "JaccardSimilarity",
    "JsonStateStore",
    "LoopDetection",
    "LoopDetector",
    "LoopDetectorConfig",
    "LoopType",
    "MonitorConfig",
    "PredictedOverflow",
    "ResourceManager",
    "SimilarityProvider",
    "StateStoreError",
    "SummaryGroup",
    "SwarmBudget",
    "SwarmGuard",
    "SwarmGuardConfig",
    "TokenVariance",
    "TrajectoryCompressor",
    "TrajectoryEntry",
    "TrajectoryLog",
    "TrendMonitor",
    "TurnReport",
    "TurnStats",
]
__version__ = "1.0.0"
