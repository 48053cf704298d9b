"""
Fine-Tuning Pipeline for Student Models

Features:
- Dataset preparation from alignment examples and training records
- Job submission and status polling against OpenAI's fine-tuning API
"""

from .dataset_builder import DatasetBuilder
from .openai_fine_tuner import FineTuneJobStatus, OpenAIFineTuner

__all__ = [
    "DatasetBuilder",
    "FineTuneJobStatus",
    "OpenAIFineTuner",
]
