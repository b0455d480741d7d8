"""Tests for the apkg-import CLI."""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from apps.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, object]]:
    """Keep the CLI from pointing cached loggers at the runner's streams."""
    calls: list[dict[str, object]] = []
    monkeypatch.setattr("packages.common.logging.configure_logging", lambda **kwargs: calls.append(kwargs))
    return calls


@pytest.fixture
def colors_path(colors_apkg: bytes, temp_dir: Path) -> Path:
    path = temp_dir / "colors.apkg"
    path.write_bytes(colors_apkg)
    return path


class TestInspect:
    """Tests for the inspect command."""

    def test_summary_table(self, colors_path: Path) -> None:
        """Decks and card counts are listed."""
        result = runner.invoke(app, ["inspect", str(colors_path)])

        assert result.exit_code == 0
        assert "collection.anki2" in result.stdout
        assert "Colors" in result.stdout
        assert "Total cards: 1" in result.stdout

    def test_json_output(self, colors_path: Path) -> None:
        """--json prints the full result."""
        result = runner.invoke(app, ["inspect", str(colors_path), "--json"])

        assert result.exit_code == 0
        assert '"front": "Red"' in result.stdout
        assert '"media": []' in result.stdout

    def test_debug_flag(self, colors_path: Path, quiet_logging: list[dict[str, object]]) -> None:
        """--debug turns on debug logging."""
        runner.invoke(app, ["inspect", str(colors_path), "--debug"])
        assert quiet_logging == [{"debug": True}]

    def test_missing_file(self, temp_dir: Path) -> None:
        """A missing path exits with an error."""
        result = runner.invoke(app, ["inspect", str(temp_dir / "nope.apkg")])

        assert result.exit_code == 1
        assert "File not found" in result.stdout

    def test_import_error_reports_kind(self, temp_dir: Path) -> None:
        """Fatal import errors print their kind and exit 1."""
        path = temp_dir / "broken.apkg"
        path.write_bytes(b"not a zip")

        result = runner.invoke(app, ["inspect", str(path)])

        assert result.exit_code == 1
        assert "MalformedContainer" in result.stdout

    def test_import_error_as_json(self, temp_dir: Path) -> None:
        """With --json, fatal errors are printed as a JSON object."""
        path = temp_dir / "broken.apkg"
        path.write_bytes(b"not a zip")

        result = runner.invoke(app, ["inspect", str(path), "--json"])

        assert result.exit_code == 1
        assert '"kind": "MalformedContainer"' in result.stdout

    def test_invalid_option(self, colors_path: Path) -> None:
        """A non-positive note cap is rejected."""
        result = runner.invoke(app, ["inspect", str(colors_path), "--max-notes", "0"])

        assert result.exit_code == 1
        assert "Invalid option" in result.stdout


def test_version() -> None:
    """The version command prints the package version."""
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "apkg-importer" in result.stdout
