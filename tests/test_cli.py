"""Tests for the Typer CLI."""

import json
from pathlib import Path

import httpx
import pytest
from typer.testing import CliRunner

from scriptvet import __version__, cli
from scriptvet import config as config_module
from scriptvet.config import ENGINE_ENV_VARS, EngineSettings
from scriptvet.crypto.hasher import hash_content
from scriptvet.exceptions import ScriptInputError, SynthesisError
from scriptvet.models.assessment import FetchOutcome
from scriptvet.scanner import orchestrator
from scriptvet.scanner.narrator import Narrator

FIXTURES = Path(__file__).parent / "fixtures"

runner = CliRunner()

INSTALLER = b"echo installing\n"
ECHO_A = b"echo a\n"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    config_dir = tmp_path / ".scriptvet"
    monkeypatch.setattr(config_module, "CONFIG_DIR", config_dir)
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_dir / "config.yaml")
    for name in list(ENGINE_ENV_VARS) + [
        "SCRIPTVET_LLM_PROVIDER",
        "OPENAI_API_KEY",
        "GEMINI_API_KEY",
        "ANTHROPIC_API_KEY",
        "OLLAMA_HOST",
        "SCRIPTVET_LOCAL_OPENAI_URL",
    ]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def remote_scripts(monkeypatch):
    """Serve remote scripts from a dict instead of the network."""
    scripts = {}

    def handler(request):
        body = scripts.get(str(request.url))
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body.encode())

    def analyze_offline(content, **kwargs):
        return orchestrator.analyze_script(
            content, transport=httpx.MockTransport(handler), **kwargs
        )

    monkeypatch.setattr(cli, "analyze_script", analyze_offline)
    return scripts


class TestScan:
    """scriptvet scan."""

    def test_safe_script_json(self):
        """A script with no remote references scores 1 with an empty bill of materials."""
        result = runner.invoke(
            cli.app, ["scan", str(FIXTURES / "safe_install.sh"), "--no-llm", "--json"]
        )
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["riskScore"] == 1
        assert data["billOfMaterials"] == {"externalBinaries": [], "remoteScripts": []}
        assert set(data) == {"riskScore", "report", "billOfMaterials"}

    def test_remote_scripts_json(self, remote_scripts):
        """Remote scripts appear in the JSON bill of materials with their status."""
        remote_scripts["https://get.example.com/install.sh"] = INSTALLER.decode()
        result = runner.invoke(
            cli.app, ["scan", str(FIXTURES / "pipe_install.sh"), "--no-llm", "--json"]
        )
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["riskScore"] == 9
        extras, install = data["billOfMaterials"]["remoteScripts"]
        assert extras["url"] == "https://extras.example.com/setup.sh"
        assert extras["status"] == "error"
        assert install == {
            "detail": f"Not in the known-script registry (sha256 {hash_content(INSTALLER)})",
            "status": "unverified",
            "url": "https://get.example.com/install.sh",
        }

    def test_console_output(self):
        """The console report shows the score and external binaries."""
        result = runner.invoke(cli.app, ["scan", str(FIXTURES / "binary_install.sh"), "--no-llm"])
        assert result.exit_code == 0
        assert "Risk Score" in result.stdout
        assert "kubectl" in result.stdout
        assert "does not download and execute any remote scripts" in result.stdout

    def test_quiet_output(self):
        """--quiet drops the binaries section."""
        result = runner.invoke(
            cli.app, ["scan", str(FIXTURES / "binary_install.sh"), "--no-llm", "--quiet"]
        )
        assert result.exit_code == 0
        assert "Risk Score" in result.stdout
        assert "External Binaries" not in result.stdout

    def test_stdin(self):
        """- reads the script from stdin."""
        result = runner.invoke(cli.app, ["scan", "-", "--no-llm", "--json"], input="echo hi\n")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["riskScore"] == 1

    def test_url(self, monkeypatch):
        """--url fetches the script before analyzing it."""
        seen = []

        async def fake_fetch(url, **kwargs):
            seen.append(url)
            return "echo from the web\n"

        monkeypatch.setattr(cli, "fetch_script", fake_fetch)
        result = runner.invoke(
            cli.app, ["scan", "--url", "https://x.io/install.sh", "--no-llm", "--json"]
        )
        assert result.exit_code == 0
        assert seen == ["https://x.io/install.sh"]
        assert json.loads(result.stdout)["riskScore"] == 1

    def test_output_file(self, tmp_path):
        """-o writes the JSON report alongside the console output."""
        out = tmp_path / "reports" / "report.json"
        result = runner.invoke(
            cli.app,
            ["scan", str(FIXTURES / "safe_install.sh"), "--no-llm", "--quiet", "-o", str(out)],
        )
        assert result.exit_code == 0
        assert json.loads(out.read_text())["riskScore"] == 1

    def test_missing_file(self, tmp_path):
        """A missing file exits 1."""
        result = runner.invoke(cli.app, ["scan", str(tmp_path / "nope.sh"), "--no-llm"])
        assert result.exit_code == 1
        assert "File not found" in result.output

    def test_empty_file(self, tmp_path):
        """A whitespace-only file exits 1."""
        empty = tmp_path / "empty.sh"
        empty.write_text("  \n")
        result = runner.invoke(cli.app, ["scan", str(empty), "--no-llm"])
        assert result.exit_code == 1
        assert "empty" in result.output

    def test_needs_exactly_one_input(self):
        """Exactly one of FILE and --url is required."""
        assert runner.invoke(cli.app, ["scan", "--no-llm"]).exit_code == 1
        both = runner.invoke(
            cli.app,
            ["scan", str(FIXTURES / "safe_install.sh"), "--url", "https://x.io/a.sh"],
        )
        assert both.exit_code == 1

    def test_bad_max_depth(self):
        """An out-of-range --max-depth is rejected."""
        result = runner.invoke(
            cli.app, ["scan", str(FIXTURES / "safe_install.sh"), "--no-llm", "--max-depth", "99"]
        )
        assert result.exit_code == 1
        assert "Invalid engine settings" in result.output

    def test_synthesis_failure(self, monkeypatch):
        """A narrator failure exits 1 with the error."""
        class BrokenNarrator(Narrator):
            name = "broken"

            async def narrate(self, script_content, verification_results):
                raise SynthesisError("model returned garbage")

        monkeypatch.setattr(cli, "create_narrator", lambda use_llm=True: BrokenNarrator())
        result = runner.invoke(cli.app, ["scan", str(FIXTURES / "safe_install.sh"), "--json"])
        assert result.exit_code == 1
        assert "analysis failed" in result.output

    def test_custom_registry(self, tmp_path, remote_scripts):
        """--registry verifies a pinned script."""
        remote_scripts["https://x.io/a.sh"] = "echo a\n"
        registry = tmp_path / "known.yaml"
        registry.write_text(
            f"scripts:\n  - url: https://x.io/a.sh\n    hash: sha256:{hash_content(ECHO_A)}\n"
        )
        script = tmp_path / "install.sh"
        script.write_text("curl -fsSL https://x.io/a.sh | sh\n")
        result = runner.invoke(
            cli.app, ["scan", str(script), "--no-llm", "--json", "--registry", str(registry)]
        )
        assert result.exit_code == 0
        (record,) = json.loads(result.stdout)["billOfMaterials"]["remoteScripts"]
        assert record == {"status": "verified", "url": "https://x.io/a.sh"}


class TestReadScript:
    """Resolving the script to analyze."""

    def test_no_input_raises(self):
        """Neither a file nor a URL is an input error, not an assertion."""
        with pytest.raises(ScriptInputError, match="No script given"):
            cli._read_script(None, None, EngineSettings())

    def test_file_path(self):
        """A file path reads its content and reports the path as the source."""
        path = FIXTURES / "safe_install.sh"
        content, source = cli._read_script(str(path), None, EngineSettings())
        assert content == path.read_text()
        assert source == str(path)


class TestPin:
    """scriptvet pin."""

    def test_prints_registry_yaml(self, monkeypatch):
        """pin prints registry YAML with normalized URLs and digests."""
        async def fake_fetch(urls, settings):
            return [
                FetchOutcome(url=url, content="echo a\n", digest=hash_content(b"echo a\n"))
                for url in urls
            ]

        monkeypatch.setattr(cli, "_fetch_for_pin", fake_fetch)
        result = runner.invoke(cli.app, ["pin", "https://X.io/a.sh"])
        assert result.exit_code == 0
        assert "scripts:" in result.stdout
        assert "url: https://x.io/a.sh" in result.stdout
        assert f"hash: sha256:{hash_content(ECHO_A)}" in result.stdout

    def test_failures_exit_nonzero(self, monkeypatch):
        """pin exits 1 when a URL fails or is not fetchable."""
        async def fake_fetch(urls, settings):
            return [FetchOutcome(url=url, error=f"HTTP 404 Not Found from {url}") for url in urls]

        monkeypatch.setattr(cli, "_fetch_for_pin", fake_fetch)
        result = runner.invoke(cli.app, ["pin", "https://x.io/gone.sh", "ftp://x.io/a.sh"])
        assert result.exit_code == 1
        assert "404" in result.output
        assert "Not a fetchable" in result.output


class TestVersion:
    """scriptvet version."""

    def test_version(self):
        """version prints the package version."""
        result = runner.invoke(cli.app, ["version"])
        assert result.exit_code == 0
        assert f"scriptvet v{__version__}" in result.stdout
