"""
Dataset Builder for Fine-Tuning

Turns a signature's alignment examples and training records into a
fine-tuning dataset. Each row pairs the zero-shot prompt the student will
receive with the validated output it should produce.
"""

import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ..distillation.models import AlignmentExample, TrainingRecord
from ..output_decoder import OutputDecoder
from ..prompt_builder import PromptBuilder
from ..signature import FunctionSignature
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DatasetBuilder:
    """
    Builds fine-tuning datasets for one signature.

    Features:
    - Alignment examples first (declaration order), then training records
    - Partial alignment examples are skipped (they are not complete outputs)
    - Identical (input, output) pairs are de-duplicated
    - Export in OpenAI chat JSONL format
    """

    def __init__(self, output_dir: Optional[str] = None, prompt_builder: Optional[PromptBuilder] = None):
        """
        Initialize the dataset builder.

        Args:
            output_dir: Directory to save datasets
            prompt_builder: Builder used to render student prompts
        """
        self.output_dir = output_dir or os.path.join("data", "fine_tuning")
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.decoder: OutputDecoder = self.prompt_builder.decoder

    def build(
        self,
        signature: FunctionSignature,
        examples: Sequence[AlignmentExample],
        records: Sequence[TrainingRecord],
    ) -> List[Dict[str, Any]]:
        """
        Build the dataset rows.

        Args:
            signature: Signature being distilled
            examples: Alignment examples
            records: Training records

        Returns:
            List of {"prompt", "completion", "source"} rows
        """
        rows: List[Dict[str, Any]] = []
        seen = set()

        def add(inputs: Dict[str, Any], output: Any, source: str):
            prompt = self.prompt_builder.build(signature, [], inputs)
            completion = self.decoder.encode(output, signature.output)
            key = (prompt, completion)
            if key in seen:
                return
            seen.add(key)
            rows.append({"prompt": prompt, "completion": completion, "source": source})

        skipped_partial = 0
        for example in examples:
            if example.partial:
                skipped_partial += 1
                continue
            add(example.inputs, example.expected, "alignment")

        for record in records:
            add(record.inputs, record.output, record.role)

        logger.info(
            f"Built dataset for {signature.name}: {len(rows)} rows "
            f"({len(examples)} examples, {len(records)} records, "
            f"{skipped_partial} partial examples skipped)"
        )
        return rows

    def validate_examples(self, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Validate dataset rows for completeness.

        Returns:
            Validation report with statistics
        """
        valid_rows = []
        invalid_rows = []

        for row in rows:
            issues = []
            for key in ("prompt", "completion"):
                if not row.get(key):
                    issues.append(f"Missing {key}")
            if issues:
                invalid_rows.append({"row": row, "issues": issues})
            else:
                valid_rows.append(row)

        return {
            "total": len(rows),
            "valid": len(valid_rows),
            "invalid": len(invalid_rows),
            "valid_examples": valid_rows,
            "invalid_examples": invalid_rows,
            "validation_rate": len(valid_rows) / len(rows) if rows else 0,
        }

    def to_openai_format(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Convert rows to OpenAI chat fine-tuning format.
        """
        return [
            {
                "messages": [
                    {"role": "user", "content": row["prompt"]},
                    {"role": "assistant", "content": row["completion"]},
                ]
            }
            for row in rows
        ]

    def to_jsonl_format(self, rows: List[Dict[str, Any]]) -> str:
        """OpenAI-format JSONL text for the given rows."""
        return "\n".join(json.dumps(item, ensure_ascii=False) for item in self.to_openai_format(rows))

    def save_dataset(self, rows: List[Dict[str, Any]], filename: Optional[str] = None) -> str:
        """
        Save rows to a JSONL file in OpenAI format.

        Args:
            rows: Dataset rows
            filename: Output filename without extension (timestamped by default)

        Returns:
            Path to saved file
        """
        os.makedirs(self.output_dir, exist_ok=True)
        if filename is None:
            filename = f"dataset_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}"

        filepath = os.path.join(self.output_dir, f"{filename}.jsonl")
        with open(filepath, "w", encoding="utf-8") as f:
            for item in self.to_openai_format(rows):
                f.write(json.dumps(item, ensure_ascii=False) + "\n")

        logger.info(f"Saved {len(rows)} rows to {filepath}")
        return filepath

    def get_dataset_stats(self, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Row counts by source and average lengths."""
        sources: Dict[str, int] = {}
        for row in rows:
            source = row.get("source", "unknown")
            sources[source] = sources.get(source, 0) + 1

        return {
            "total_examples": len(rows),
            "sources": sources,
            "avg_prompt_length": (
                sum(len(r["prompt"]) for r in rows) / len(rows) if rows else 0
            ),
            "avg_completion_length": (
                sum(len(r["completion"]) for r in rows) / len(rows) if rows else 0
            ),
        }
