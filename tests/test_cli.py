"""
Tests for the alignfn command-line tool.
"""

import json

import pytest

from alignfn.cli import main
from alignfn.distillation.alignment_store import AlignmentStore
from alignfn.distillation.models import AlignmentExample, TrainingRecord


@pytest.fixture
def populated(database_url, sentiment_signature, truthiness_signature):
    """A store with one aligned signature holding records and one cold signature."""
    with AlignmentStore(database_url) as store:
        store.declare_alignment(sentiment_signature, [
            AlignmentExample(inputs={"text": "great"}, expected="positive"),
        ])
        for text, label, role in [("meh", "neutral", "teacher"), ("bad", "negative", "teacher"),
                                  ("ok", "neutral", "student")]:
            store.append_training_record(
                sentiment_signature, TrainingRecord(inputs={"text": text}, output=label, model="m", role=role)
            )
        store.register_signature(truthiness_signature)
    return database_url


class TestCommands:
    """Output of each command."""

    def test_help_without_arguments(self, capsys):
        main(["alignfn"])
        assert "Usage:" in capsys.readouterr().out

    def test_unknown_command(self, capsys, database_url):
        main(["alignfn", "frobnicate", "--database-url", database_url])
        out = capsys.readouterr().out
        assert "Unknown command: frobnicate" in out
        assert "Usage:" in out

    def test_list_empty_store(self, capsys, database_url):
        main(["alignfn", "list-signatures", "--database-url", database_url])
        assert "No signatures registered." in capsys.readouterr().out

    def test_list_signatures(self, capsys, populated, sentiment_signature):
        main(["alignfn", "list-signatures", "--database-url", populated])
        out = capsys.readouterr().out

        assert "classify_sentiment" in out
        assert "get_truthiness" in out
        line = next(l for l in out.splitlines() if "classify_sentiment" in l)
        assert line.startswith(sentiment_signature.fingerprint[:8])
        assert "aligned" in line
        assert " 3 " in line

    def test_show_by_prefix(self, capsys, populated, sentiment_signature):
        main(["alignfn", "show", sentiment_signature.fingerprint[:6], "--database-url", populated])
        out = capsys.readouterr().out

        assert "Signature: classify_sentiment" in out
        assert f"Fingerprint: {sentiment_signature.fingerprint}" in out
        assert "State: aligned" in out
        assert "Training records: 3" in out
        assert "Alignment examples: 1" in out
        assert "text: string" in out

    def test_show_unknown_prefix(self, capsys, populated):
        main(["alignfn", "show", "zzzz", "--database-url", populated])
        assert "No signature matches zzzz" in capsys.readouterr().out

    def test_ambiguous_prefix(self, capsys, populated):
        main(["alignfn", "show", "", "--database-url", populated])
        assert "ambiguous" in capsys.readouterr().out

    def test_export_dataset(self, capsys, populated, sentiment_signature, tmp_path):
        output = tmp_path / "out" / "sentiment.jsonl"
        main([
            "alignfn", "export-dataset", sentiment_signature.fingerprint,
            "--output", str(output), "--database-url", populated,
        ])

        out = capsys.readouterr().out
        assert f"Exported 3 rows to {output}" in out
        with open(output, encoding="utf-8") as f:
            lines = [json.loads(line) for line in f]
        # One alignment example plus two teacher records; the student record is excluded
        assert [line["messages"][1]["content"] for line in lines] == ['"positive"', '"neutral"', '"negative"']

    def test_export_without_data(self, capsys, populated, truthiness_signature):
        main(["alignfn", "export-dataset", truthiness_signature.fingerprint, "--database-url", populated])
        assert "No training data for get_truthiness." in capsys.readouterr().out

    @pytest.mark.parametrize("command", ["show", "export-dataset"])
    def test_missing_fingerprint(self, capsys, command):
        main(["alignfn", command])
        assert f"Usage: alignfn {command} <fingerprint>" in capsys.readouterr().out
