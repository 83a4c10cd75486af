"""Tests for the click CLI."""

from __future__ import annotations

from unittest.mock import patch

from click.testing import CliRunner

from freightlens.cli import main
from freightlens.llm.router import LLMResponse, ToolCall


def test_init_and_seed(tmp_path):
    db_path = str(tmp_path / "cli.duckdb")
    runner = CliRunner()

    result = runner.invoke(main, ["init-db", "--db-path", db_path])
    assert result.exit_code == 0
    assert "Initialized schema" in result.output

    result = runner.invoke(main, ["seed-demo", "--db-path", db_path, "--rows", "5"])
    assert result.exit_code == 0
    assert "shipment: 10" in result.output
    assert "c-100, c-200" in result.output


def test_ask_prints_report(known_data_db, scripted_llm):
    section = {
        "section_type": "table",
        "title": "Loads",
        "config": {"columns": ["load_id", "retail"]},
    }
    llm = scripted_llm([
        LLMResponse(tool_calls=[
            ToolCall(id="a", name="create_report_draft", input={"name": "Loads"}),
            ToolCall(id="b", name="add_section", input=section),
            ToolCall(id="c", name="finalize_report", input={"summary": "Your loads."}),
        ]),
    ])
    with patch("freightlens.orchestrator.runtime.complete", new=llm):
        result = CliRunner().invoke(main, ["ask", "List my loads", "--db-path", str(known_data_db), "--customer-id", "c-100"])
    assert result.exit_code == 0, result.output
    assert "Your loads." in result.output
    assert "1. [table] Loads" in result.output
    assert "3 tool calls in 1 rounds" in result.output


def test_ask_without_database(tmp_path):
    result = CliRunner().invoke(main, ["ask", "hi", "--db-path", str(tmp_path / "no.duckdb"), "--customer-id", "c-1"])
    assert result.exit_code != 0
    assert "init-db" in result.output


def test_llm_config(monkeypatch):
    monkeypatch.setenv("FL_LLM_PROVIDER", "ollama")
    result = CliRunner().invoke(main, ["llm-config"])
    assert result.exit_code == 0
    assert "provider: ollama" in result.output
