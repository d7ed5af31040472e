"""
Token sampling strategies and generation control.

Provides:
- SamplingParams: Sampling configuration dataclass
- sample: Greedy, temperature, top-k and top-p sampling with penalties
- StopChecker: Stop sequence detection
"""

from vlm_bridge.sampling.sampling import SamplingParams, sample
from vlm_bridge.sampling.stop_checker import StopChecker

__all__ = ["SamplingParams", "sample", "StopChecker"]
