"""
alignfn CLI Tool

Command-line interface for inspecting the alignment store.
"""

import json
import os
import sys
from typing import List, Optional

from .distillation.alignment_store import AlignmentStore
from .errors import AlignFnError
from .fine_tuning.dataset_builder import DatasetBuilder
from .signature import FunctionSignature
from .utils.logger import get_logger

logger = get_logger(__name__)


class AlignFnCLI:
    """Command-line interface over an alignment store."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize CLI."""
        self.store = AlignmentStore(database_url)
        self.dataset_builder = DatasetBuilder()

    def list_signatures(self) -> None:
        """List all known signatures with their state."""
        with self.store:
            rows = self.store.list_signatures()

        if not rows:
            print("No signatures registered.")
            return

        print(f"{'FINGERPRINT':<10} {'STATE':<10} {'RECORDS':>8}  NAME")
        print("-" * 70)
        for row in rows:
            print(
                f"{row['fingerprint'][:8]:<10} {row['state']:<10} "
                f"{row['training_records']:>8}  {row['name']}"
            )

    def show(self, fingerprint: str) -> None:
        """
        Show one signature: state, student model, counts and declaration.

        Args:
            fingerprint: Full fingerprint or unique prefix
        """
        with self.store:
            row = self._resolve(fingerprint)
            if row is None:
                return
            examples = self.store.get_examples(row["fingerprint"])
            failures = self.store.count_failures(row["fingerprint"])

        signature = FunctionSignature.from_dict(json.loads(row["signature"]))

        print(f"Signature: {signature.name}")
        print(f"  Fingerprint: {row['fingerprint']}")
        print(f"  State: {row['state']}")
        print(f"  Student model: {row['student_model'] or '-'}")
        print(f"  Last job: {row['job_id'] or '-'}")
        print(f"  Training records: {row['training_records']}")
        print(f"  Records at last attempt: {row['records_at_last_attempt']}")
        print(f"  Failed invocations: {failures}")
        print(f"  Alignment examples: {len(examples)}")
        print(f"\nPrompt:\n  {signature.prompt}")
        print("\nInputs:")
        for param in signature.inputs:
            print(f"  {param.name}: {param.type.describe(1)}")
        print(f"\nOutput:\n  {signature.output.describe(1)}")

    def export_dataset(self, fingerprint: str, output: Optional[str] = None) -> Optional[str]:
        """
        Export a signature's fine-tuning dataset as OpenAI chat JSONL.

        Args:
            fingerprint: Full fingerprint or unique prefix
            output: Output file path (defaults to the dataset directory)

        Returns:
            Path to the written file
        """
        with self.store:
            row = self._resolve(fingerprint)
            if row is None:
                return None
            signature = FunctionSignature.from_dict(json.loads(row["signature"]))
            examples = self.store.get_examples(signature)
            records = [r for r in self.store.get_training_records(signature) if r.role == "teacher"]

        rows = self.dataset_builder.build(signature, examples, records)
        if not rows:
            print(f"No training data for {signature.name}.")
            return None

        if output:
            directory = os.path.dirname(os.path.abspath(output))
            os.makedirs(directory, exist_ok=True)
            with open(output, "w", encoding="utf-8") as f:
                f.write(self.dataset_builder.to_jsonl_format(rows) + "\n")
            path = output
        else:
            path = self.dataset_builder.save_dataset(rows, filename=f"{signature.name}_{row['fingerprint'][:8]}")

        stats = self.dataset_builder.get_dataset_stats(rows)
        print(f"✓ Exported {stats['total_examples']} rows to {path}")
        for source, count in stats["sources"].items():
            print(f"  {source}: {count}")
        return path

    def _resolve(self, fingerprint: str):
        matches = [r for r in self.store.list_signatures() if r["fingerprint"].startswith(fingerprint)]
        if not matches:
            print(f"No signature matches {fingerprint}")
            return None
        if len(matches) > 1:
            print(f"Fingerprint prefix {fingerprint} is ambiguous:")
            for match in matches:
                print(f"  {match['fingerprint']}  {match['name']}")
            return None

        row = self.store.get_signature_row(matches[0]["fingerprint"])
        row["training_records"] = matches[0]["training_records"]
        return row

    @staticmethod
    def print_help() -> None:
        """Print help message."""
        print("""
alignfn CLI Tool

Usage:
  alignfn list-signatures [--database-url <url>]
  alignfn show <fingerprint> [--database-url <url>]
  alignfn export-dataset <fingerprint> [--output <file>] [--database-url <url>]
  alignfn help

Options:
  --database-url   SQLAlchemy URL of the alignment store (default: DATABASE_URL)
  --output         Output JSONL file for export-dataset

Fingerprints may be abbreviated to any unique prefix.

Examples:
  alignfn list-signatures
  alignfn show 3fa9c2d1
  alignfn export-dataset 3fa9c2d1 --output data/classify.jsonl
""")


def _option(argv: List[str], name: str) -> Optional[str]:
    if name in argv:
        idx = argv.index(name)
        if idx + 1 < len(argv):
            return argv[idx + 1]
    return None


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    argv = list(sys.argv if argv is None else argv)

    if len(argv) < 2:
        AlignFnCLI.print_help()
        return

    command = argv[1]
    cli = AlignFnCLI(database_url=_option(argv, "--database-url"))

    try:
        if command == "help":
            AlignFnCLI.print_help()

        elif command == "list-signatures":
            cli.list_signatures()

        elif command == "show":
            if len(argv) < 3:
                print("Usage: alignfn show <fingerprint>")
                return
            cli.show(argv[2])

        elif command == "export-dataset":
            if len(argv) < 3:
                print("Usage: alignfn export-dataset <fingerprint> [--output <file>]")
                return
            cli.export_dataset(argv[2], output=_option(argv, "--output"))

        else:
            print(f"Unknown command: {command}")
            AlignFnCLI.print_help()

    except AlignFnError as e:
        print(f"Error: {e}")
        logger.exception(e)
        sys.exit(1)


if __name__ == "__main__":
    main()
