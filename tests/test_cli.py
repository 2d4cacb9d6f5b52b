"""Tests for the CLI."""

from __future__ import annotations

import datetime as dt
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from inkwell.cli import app
from inkwell.store import Vault

if TYPE_CHECKING:
    from pathlib import Path

    from inkwell.crypto import KdfParams

runner = CliRunner(env={"NO_COLOR": "1", "TERM": "dumb"})

PASSPHRASE = "cli passphrase"


@pytest.fixture
def cli_vault(tmp_path: Path, fast_kdf: KdfParams) -> Path:
    """A vault created with cheap KDF parameters, then locked."""
    root = tmp_path / "journal"
    vault = Vault(root, kdf_params=fast_kdf)
    vault.lock(vault.unlock(PASSPHRASE))
    return root


def _invoke(cli_vault: Path, *args: str, env: dict[str, str] | None = None):  # noqa: ANN202
    return runner.invoke(
        app,
        ["--vault-dir", str(cli_vault), *args],
        env={"INKWELL_PASSPHRASE": PASSPHRASE, **(env or {})},
    )


def test_help_lists_commands() -> None:
    """Every journal command is registered."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    commands = ("edit", "entries", "delete", "reindex", "search", "ask", "chat", "reflect", "summarize", "summaries", "patterns")
    for command in commands:
        assert command in result.stdout


def test_edit_then_list(cli_vault: Path) -> None:
    """An entry written through $EDITOR shows up in the listing."""
    editor = "sh -c 'printf \"walked by the river\" > \"$0\"'"
    with patch(
        "inkwell.cli.OpenAIEmbeddingService.embed",
        new_callable=AsyncMock,
        return_value=[1.0, 0.0],
    ):
        result = _invoke(cli_vault, "edit", "2024-06-15", env={"EDITOR": editor})
    assert result.exit_code == 0, result.stdout
    assert "Saved 2024-06-15 (4 words)" in result.stdout

    result = _invoke(cli_vault, "entries")
    assert result.exit_code == 0
    assert "2024-06-15" in result.stdout
    assert list(cli_vault.rglob("*.md")) == []


def test_wrong_passphrase_exits_with_error(cli_vault: Path) -> None:
    """Authentication failures are reported, not raised."""
    result = runner.invoke(
        app,
        ["--vault-dir", str(cli_vault), "entries"],
        env={"INKWELL_PASSPHRASE": "wrong"},
    )
    assert result.exit_code == 1
    assert "Error" in result.stdout


def test_delete_missing_entry(cli_vault: Path) -> None:
    """Deleting a date without an entry says so."""
    result = _invoke(cli_vault, "delete", "2024-01-01", "--yes")
    assert result.exit_code == 0
    assert "No entry for 2024-01-01" in result.stdout


def test_invalid_date(cli_vault: Path) -> None:
    """Dates must be ISO formatted."""
    result = _invoke(cli_vault, "delete", "15/06/2024", "--yes")
    assert result.exit_code != 0


def _flat(output: str) -> str:
    return " ".join(output.split())


def _fake_embed(vector: list[float]):  # noqa: ANN202
    return patch(
        "inkwell.cli.OpenAIEmbeddingService.embed",
        new_callable=AsyncMock,
        return_value=vector,
    )


def test_new_entry_starts_with_date_header(cli_vault: Path, tmp_path: Path) -> None:
    """The editor opens on a dated heading; leaving it untouched saves nothing."""
    seen = tmp_path / "seen.md"
    editor = f"sh -c 'cp \"$0\" {seen}'"
    result = _invoke(cli_vault, "edit", "2024-06-15", env={"EDITOR": editor})
    assert result.exit_code == 0, result.stdout
    assert seen.read_text() == "# 2024-06-15\n\n"
    assert "No changes" in result.stdout


def test_session_expiring_while_editing_keeps_the_text(cli_vault: Path) -> None:
    """If the session times out during a long edit, unlocking again saves the entry."""
    editor = "sh -c 'sleep 0.6; printf \"my long entry\" > \"$0\"'"
    with _fake_embed([1.0, 0.0]):
        result = _invoke(
            cli_vault,
            "edit",
            "2024-06-15",
            env={"EDITOR": editor, "INKWELL_SESSION_TIMEOUT": "0.005"},
        )
    assert result.exit_code == 0, result.stdout
    assert "Session expired while editing" in _flat(result.stdout)
    assert "Saved 2024-06-15 (3 words)" in result.stdout

    vault = Vault(cli_vault)
    session = vault.unlock(PASSPHRASE)
    assert vault.read_entry(session, dt.date(2024, 6, 15)).content == "my long entry"
    vault.lock(session)


def test_invalid_config_value_exits_cleanly(cli_vault: Path) -> None:
    """A bad environment value is reported without a traceback."""
    result = _invoke(cli_vault, "entries", env={"INKWELL_SESSION_TIMEOUT": "thirty"})
    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "Invalid configuration" in _flat(result.stdout)


def test_search_with_stale_embeddings_suggests_reindex(cli_vault: Path) -> None:
    """Embeddings from another model are reported with the command that fixes them."""
    editor = "sh -c 'printf \"walked by the river\" > \"$0\"'"
    with _fake_embed([1.0, 0.0]):
        assert _invoke(cli_vault, "edit", "2024-06-15", env={"EDITOR": editor}).exit_code == 0
    with _fake_embed([1.0, 0.0, 0.0]):
        result = _invoke(cli_vault, "search", "river")
    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "inkwell reindex --force" in _flat(result.stdout)


def test_summarize_then_list_summaries_and_patterns(cli_vault: Path) -> None:
    """A summary is generated once, listed later, and patterns describe the entry."""
    editor = "sh -c 'printf \"walked by the river\" > \"$0\"'"
    with _fake_embed([1.0, 0.0]):
        assert _invoke(cli_vault, "edit", "2024-06-15", env={"EDITOR": editor}).exit_code == 0

    with patch(
        "inkwell.cli.OpenAIChatService.complete",
        new_callable=AsyncMock,
        return_value="You took a quiet walk.",
    ) as complete:
        result = _invoke(cli_vault, "summarize", "2024-06-15")
        assert result.exit_code == 0, result.stdout
        assert "Jun 15, 2024" in result.stdout
        assert "You took a quiet walk." in result.stdout

        result = _invoke(cli_vault, "summarize", "2024-06-15", "--level", "weekly")
        assert result.exit_code == 0, result.stdout
        assert "Week ending Jun 15, 2024" in result.stdout
    assert complete.await_count == 2

    result = _invoke(cli_vault, "summaries", "--level", "daily")
    assert result.exit_code == 0, result.stdout
    assert "You took a quiet walk." in result.stdout
    assert "Week ending" not in result.stdout

    result = _invoke(cli_vault, "patterns")
    assert result.exit_code == 0, result.stdout
    assert "You write most often on Saturdays (100% of entries)" in _flat(result.stdout)


def test_summarize_empty_period(cli_vault: Path) -> None:
    """A period without entries says so."""
    result = _invoke(cli_vault, "summarize", "2024-06-15", "--level", "monthly")
    assert result.exit_code == 0, result.stdout
    assert "No entries between 2024-06-01 and 2024-06-30" in result.stdout
