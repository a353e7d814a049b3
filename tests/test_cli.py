import json
from unittest.mock import patch

import pytest

from docqueue.cli import load_renderer, main
from docqueue.job_store import JobStore
from docqueue.models import JobStatus
from docqueue.renderer import Renderer
from docqueue.store import SQLiteStore


@pytest.fixture
def cli_db(temp_dir):
    return str(temp_dir / "cli.db")


@pytest.fixture
def seeded(cli_db):
    """Job store on the CLI database (default key prefix)."""
    kv = SQLiteStore(cli_db)
    yield JobStore(kv)
    kv.close()


@pytest.fixture
def renderer_module(tmp_path, monkeypatch):
    """Importable module exposing renderers in each supported form."""
    (tmp_path / "fake_renderers.py").write_text(
        "from docqueue.renderer import Renderer\n"
        "\n"
        "def render_fn(job_type, payload):\n"
        "    return b'%PDF-fn'\n"
        "\n"
        "class PlainRenderer(Renderer):\n"
        "    def render(self, job_type, payload):\n"
        "        return b'%PDF-class'\n"
        "\n"
        "instance = PlainRenderer()\n"
        "not_a_renderer = 42\n"
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    return "fake_renderers"


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["docqueue", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_work_help():
    """Test work subcommand help."""
    with pytest.raises(SystemExit) as exc_info:
        main(["work", "--help"])
    assert exc_info.value.code == 0


def test_cli_work_requires_renderer():
    with pytest.raises(SystemExit) as exc_info:
        main(["work"])
    assert exc_info.value.code == 2


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    main([])
    captured = capsys.readouterr()
    assert "usage:" in captured.out.lower()


def test_cli_stats(cli_db, seeded, capsys):
    seeded.create_job("document", {}, priority="urgent")
    seeded.create_job("document", {})

    main(["--db", cli_db, "stats"])

    out = capsys.readouterr().out
    assert "QUEUE STATUS" in out
    assert "Queued URGENT" in out
    assert "Queued total          2" in out


def test_cli_status(cli_db, seeded, capsys):
    job = seeded.create_job("document", {"title": "Report"})

    main(["--db", cli_db, "status", job.id])

    data = json.loads(capsys.readouterr().out)
    assert data["id"] == job.id
    assert data["status"] == "pending"
    assert data["metadata"]["title"] == "Report"


def test_cli_status_missing(cli_db, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["--db", cli_db, "status", "nope"])
    assert exc_info.value.code == 1
    assert "not found" in capsys.readouterr().err.lower()


def test_cli_cancel(cli_db, seeded, capsys):
    job = seeded.create_job("document", {})

    main(["--db", cli_db, "cancel", job.id])

    assert "cancelled" in capsys.readouterr().out
    assert seeded.get_job(job.id).status == JobStatus.CANCELLED


def test_cli_cancel_missing(cli_db, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["--db", cli_db, "cancel", "nope"])
    assert exc_info.value.code == 1
    assert "Error:" in capsys.readouterr().err


def test_cli_retry_requires_failed(cli_db, seeded, capsys):
    job = seeded.create_job("document", {})

    with pytest.raises(SystemExit) as exc_info:
        main(["--db", cli_db, "retry", job.id])
    assert exc_info.value.code == 1


def test_cli_list(cli_db, seeded, capsys):
    for _ in range(3):
        seeded.create_job("document", {}, owner_id="u1")

    main(["--db", cli_db, "list", "--owner", "u1"])

    assert "3 job(s)" in capsys.readouterr().out


def test_cli_reclaim_and_purge(cli_db, seeded, capsys):
    main(["--db", cli_db, "reclaim"])
    main(["--db", cli_db, "purge"])

    out = capsys.readouterr().out
    assert "Reclaimed 0 stuck job(s)" in out
    assert "Purged 0 expired entries" in out


def test_cli_config_shows_resolved_settings(cli_db, capsys):
    main(["--db", cli_db, "config"])

    out = capsys.readouterr().out
    assert "store:" in out
    assert cli_db in out
    assert "max_retries:" in out


def test_cli_config_single_key(cli_db, capsys):
    main(["--db", cli_db, "config", "store.path"])
    assert capsys.readouterr().out.strip() == cli_db

    main(["--db", cli_db, "config", "worker"])
    assert "max_retries:" in capsys.readouterr().out


def test_cli_config_unknown_key(cli_db, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["--db", cli_db, "config", "worker.nope"])

    assert exc_info.value.code == 1
    assert "Unknown config key: worker.nope" in capsys.readouterr().err


def test_cli_work_drain(cli_db, seeded, tmp_path, renderer_module, capsys):
    config_path = tmp_path / "work.yaml"
    config_path.write_text(
        "worker:\n"
        "  poll_interval_s: 0.05\n"
        f"cache:\n  local_root: {tmp_path / 'artifacts'}\n"
    )
    jobs = [seeded.create_job("document", {}) for _ in range(3)]

    main(
        [
            "--db", cli_db,
            "--config", str(config_path),
            "work",
            "--renderer", f"{renderer_module}:render_fn",
            "--workers", "2",
            "--drain",
        ]
    )

    out = capsys.readouterr().out
    assert "PROCESSING SUMMARY" in out
    assert "Completed:            3" in out
    assert all(seeded.get_job(j.id).status == JobStatus.COMPLETED for j in jobs)


class TestLoadRenderer:
    """Test module:attribute renderer loading."""

    def test_function(self, renderer_module):
        renderer = load_renderer(f"{renderer_module}:render_fn")
        assert isinstance(renderer, Renderer)
        assert renderer.render("document", {}) == b"%PDF-fn"

    def test_class(self, renderer_module):
        renderer = load_renderer(f"{renderer_module}:PlainRenderer")
        assert renderer.render("document", {}) == b"%PDF-class"

    def test_instance(self, renderer_module):
        renderer = load_renderer(f"{renderer_module}:instance")
        assert renderer.render("document", {}) == b"%PDF-class"

    def test_not_a_renderer(self, renderer_module):
        with pytest.raises(TypeError):
            load_renderer(f"{renderer_module}:not_a_renderer")

    def test_bad_reference(self):
        with pytest.raises(ValueError):
            load_renderer("no_colon_here")
