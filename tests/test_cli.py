"""Tests for the r2pilot command-line interface."""

import json
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest
import yaml

from conftest import ACCESS_KEY, ACCOUNT_ID, BUCKET, SECRET_KEY, make_config
from r2pilot import cli
from r2pilot.config import DEFAULT_CONFIG_PATH, R2PilotConfig
from r2pilot.engine import TransferEngine


@pytest.fixture
def wired_engine(monkeypatch, client, clock, sleeper):
    """Route cli.run() through a TransferEngine bound to the mock service."""

    def factory(config):
        return TransferEngine(config, client=client, clock=clock, sleep=sleeper)

    monkeypatch.setattr(cli, "TransferEngine", factory)


@pytest.fixture
def config_file(tmp_path, monkeypatch) -> Path:
    for var in ("R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY", "R2_API_TOKEN"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(cli, "configure_logging", lambda level, fmt: None)
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "cloudflare": {
                    "account_id": ACCOUNT_ID,
                    "access_key_id": ACCESS_KEY,
                    "secret_access_key": SECRET_KEY,
                },
                "r2": {"default_bucket": BUCKET, "default_expiration": 3600},
            }
        )
    )
    return path


class TestParseArgs:
    """Argument parsing for each subcommand."""

    def test_defaults(self):
        args = cli.parse_args(["files", "ls"])
        assert args.config == DEFAULT_CONFIG_PATH
        assert args.bucket is None
        assert args.log_level is None
        assert args.metrics_file is None
        assert args.prefix == ""

    def test_upload(self):
        args = cli.parse_args(
            ["files", "upload", "clip.mp4", "videos/clip.mp4", "--multipart", "--progress"]
        )
        assert args.command == "files"
        assert args.action == "upload"
        assert args.file == Path("clip.mp4")
        assert args.key == "videos/clip.mp4"
        assert args.multipart is True
        assert args.progress is True

    def test_upload_key_optional(self):
        assert cli.parse_args(["files", "upload", "clip.mp4"]).key is None

    def test_delete_many(self):
        assert cli.parse_args(["files", "delete", "a", "b"]).keys == ["a", "b"]

    def test_urls_generate(self):
        args = cli.parse_args(
            ["urls", "generate", "k.txt", "--method", "put", "--expires", "60", "--output", "json"]
        )
        assert args.method == "PUT"
        assert args.expires == 60
        assert args.output == "json"

    def test_invalid_method(self):
        with pytest.raises(SystemExit):
            cli.parse_args(["urls", "generate", "k", "--method", "POST"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.parse_args([])


class TestApplyOverrides:
    """Command-line flags layered over the loaded config."""

    def test_no_overrides_returns_same_config(self):
        config = R2PilotConfig()
        assert cli.apply_overrides(config, cli.parse_args(["files", "ls"])) is config

    def test_overrides(self, tmp_path):
        args = cli.parse_args(
            [
                "--bucket",
                "other-bucket",
                "--log-level",
                "DEBUG",
                "--log-format",
                "json",
                "--metrics-file",
                str(tmp_path / "m.prom"),
                "files",
                "ls",
            ]
        )
        config = cli.apply_overrides(make_config(), args)
        assert config.r2.default_bucket == "other-bucket"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.observability.metrics is True
        assert config.cloudflare.access_key_id == ACCESS_KEY


class TestFormatSize:
    @pytest.mark.parametrize(
        "size,expected",
        [(0, "0 B"), (1023, "1023 B"), (1536, "1.5 KiB"), (5 * 1024**2, "5.0 MiB")],
    )
    def test_units(self, size, expected):
        assert cli._format_size(size) == expected


class TestRun:
    """Commands executed against the in-memory service."""

    async def test_upload_and_info(self, wired_engine, service, tmp_path, capsys):
        path = tmp_path / "notes.txt"
        path.write_bytes(b"hello r2")
        status = await cli.run(make_config(), cli.parse_args(["files", "upload", str(path)]))
        assert status == 0
        stored = service.objects[(BUCKET, "notes.txt")]
        assert stored.data == b"hello r2"
        assert stored.content_type == "text/plain"
        assert "Uploaded" in capsys.readouterr().out

        status = await cli.run(make_config(), cli.parse_args(["files", "info", "notes.txt"]))
        out = capsys.readouterr().out
        assert status == 0
        assert "Size:          8 (8 B)" in out
        assert "text/plain" in out

    async def test_info_missing(self, wired_engine, capsys):
        status = await cli.run(make_config(), cli.parse_args(["files", "info", "absent"]))
        assert status == 1
        assert "Not found" in capsys.readouterr().err

    async def test_download(self, wired_engine, service, tmp_path, capsys):
        service.put(BUCKET, "dir/report.csv", b"a,b\n1,2\n")
        args = cli.parse_args(["files", "download", "dir/report.csv", str(tmp_path), "--progress"])
        assert await cli.run(make_config(), args) == 0
        assert (tmp_path / "report.csv").read_bytes() == b"a,b\n1,2\n"
        captured = capsys.readouterr()
        assert "Downloaded" in captured.out
        assert "download:" in captured.err

    async def test_ls_and_delete(self, wired_engine, service, capsys):
        service.put(BUCKET, "logs/a.log", b"a")
        service.put(BUCKET, "logs/b.log", b"bb")
        service.put(BUCKET, "other.txt", b"c")

        await cli.run(make_config(), cli.parse_args(["files", "ls", "--prefix", "logs/"]))
        lines = capsys.readouterr().out.splitlines()
        assert [line.split()[-1] for line in lines] == ["logs/a.log", "logs/b.log"]

        args = cli.parse_args(["files", "delete", "logs/a.log", "logs/b.log"])
        await cli.run(make_config(), args)
        assert capsys.readouterr().out.splitlines() == ["Deleted logs/a.log", "Deleted logs/b.log"]
        assert list(service.objects) == [(BUCKET, "other.txt")]

    async def test_urls_generate_json(self, wired_engine, capsys):
        args = cli.parse_args(
            ["urls", "generate", "a b.txt", "--expires", "900", "--output", "json"]
        )
        assert await cli.run(make_config(), args) == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["method"] == "GET"
        assert payload["key"] == "a b.txt"
        assert payload["expires_in"] == 900
        query = parse_qs(urlsplit(payload["url"]).query)
        assert query["X-Amz-Expires"] == ["900"]
        assert urlsplit(payload["url"]).path == f"/{BUCKET}/a%20b.txt"


class TestMain:
    """End-to-end entry point behaviour without network access."""

    def test_urls_generate(self, config_file, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--config", str(config_file), "urls", "generate", "file.bin"])
        assert exc_info.value.code == 0
        url = capsys.readouterr().out.strip()
        assert url.startswith(f"https://{ACCOUNT_ID}.r2.cloudflarestorage.com/{BUCKET}/file.bin?")
        assert "X-Amz-Expires=3600" in url

    def test_transfer_error_exits_nonzero(self, config_file, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(
                ["--config", str(config_file), "urls", "generate", "f", "--expires", "604801"]
            )
        assert exc_info.value.code == 1
        assert "InvalidSignedUrlSpec" in capsys.readouterr().err

    def test_missing_config(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--config", str(tmp_path / "absent.yaml"), "files", "ls"])
        assert exc_info.value.code == 1

    def test_metrics_file_written(self, config_file, tmp_path):
        metrics_path = tmp_path / "r2pilot.prom"
        with pytest.raises(SystemExit):
            cli.main(
                [
                    "--config",
                    str(config_file),
                    "--metrics-file",
                    str(metrics_path),
                    "urls",
                    "generate",
                    "file.bin",
                ]
            )
        text = metrics_path.read_text()
        assert 'r2pilot_operations_total{operation="presign",status="ok"}' in text
