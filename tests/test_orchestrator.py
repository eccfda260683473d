"""Tests for the recursive assessor.

Remote scripts are served from an in-memory dict through httpx.MockTransport;
the narrator is scripted so scores and binaries are predictable.
"""

import asyncio
import logging

import httpx
import pytest

from scriptvet.config import EngineSettings
from scriptvet.crypto.hasher import hash_content
from scriptvet.exceptions import ScriptInputError, SynthesisError
from scriptvet.models.assessment import NarrativeResult, TrustStatus
from scriptvet.models.registry import KnownScriptRegistry
from scriptvet.scanner.narrator import Narrator
from scriptvet.scanner.orchestrator import (
    ERROR_RISK_FLOOR,
    UNVERIFIED_RISK_FLOOR,
    RecursiveAssessor,
    analyze_script,
)


class ScriptedNarrator(Narrator):
    """Scores by exact script content; records every call."""

    name = "scripted"

    def __init__(self, scores=None, binaries=None, fail_on=(), slow_on=()):
        self.scores = scores or {}
        self.binaries = binaries or {}
        self.fail_on = set(fail_on)
        self.slow_on = set(slow_on)
        self.calls = []
        self.finished = []

    async def narrate(self, script_content, verification_results):
        self.calls.append((script_content, verification_results))
        if script_content in self.fail_on:
            raise SynthesisError("model returned garbage")
        if script_content in self.slow_on:
            await asyncio.sleep(5)
        self.finished.append(script_content)
        return NarrativeResult(
            risk_score=self.scores.get(script_content, 1),
            report=f"Narrative for {len(script_content)} bytes",
            external_binaries=self.binaries.get(script_content, []),
        )

    def contents(self):
        return [content for content, _ in self.calls]


class RemoteServer:
    """In-memory HTTP server for MockTransport."""

    def __init__(self, scripts, delay=0.0):
        self.scripts = {url: body.encode() for url, body in scripts.items()}
        self.delay = delay
        self.hits = {}
        self.in_flight = 0
        self.peak = 0

    async def handler(self, request):
        url = str(request.url)
        self.hits[url] = self.hits.get(url, 0) + 1
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        if url not in self.scripts:
            return httpx.Response(404)
        return httpx.Response(200, content=self.scripts[url])

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    @property
    def total_requests(self):
        return sum(self.hits.values())


def _run(script, server, narrator=None, registry=None, **settings):
    assessor = RecursiveAssessor(
        narrator or ScriptedNarrator(),
        registry=registry if registry is not None else KnownScriptRegistry(),
        settings=EngineSettings(**settings),
        transport=server.transport,
    )
    return asyncio.run(assessor.analyze(script))


def _registry(pins):
    return KnownScriptRegistry.from_records(
        [{"url": url, "hash": hash_content(body.encode())} for url, body in pins.items()]
    )


A_URL = "https://x.io/a.sh"
B_URL = "https://x.io/b.sh"
C_URL = "https://x.io/c.sh"


class TestBasicScenarios:
    """One level of remote references."""

    def test_no_references(self):
        """A script with no references scores on its own content."""
        server = RemoteServer({})
        report = _run("#!/bin/sh\necho hello\n", server)
        assert report.risk_score == 1
        assert report.bill_of_materials.remote_scripts == []
        assert server.total_requests == 0
        assert "## Remote scripts" not in report.report

    def test_verified(self):
        """A registry match is verified and its body is analyzed."""
        server = RemoteServer({A_URL: "echo a\n"})
        report = _run(
            f"curl -fsSL {A_URL} | sh\n", server, registry=_registry({A_URL: "echo a\n"})
        )
        (record,) = report.bill_of_materials.remote_scripts
        assert record.url == A_URL
        assert record.status == TrustStatus.VERIFIED
        assert report.risk_score == 1
        assert f"### {A_URL}" in report.report
        assert "- Status: verified" in report.report

    def test_digest_mismatch_is_unverified(self):
        """A changed body is unverified with the observed digest."""
        server = RemoteServer({A_URL: "echo tampered\n"})
        report = _run(
            f"curl -fsSL {A_URL} | sh\n", server, registry=_registry({A_URL: "echo a\n"})
        )
        (record,) = report.bill_of_materials.remote_scripts
        assert record.status == TrustStatus.UNVERIFIED
        assert record.detail.startswith("Content changed")
        assert report.risk_score == UNVERIFIED_RISK_FLOOR

    def test_unknown_url_is_unverified(self):
        """A URL absent from the registry is unverified."""
        server = RemoteServer({A_URL: "echo a\n"})
        report = _run(f"curl -fsSL {A_URL} | sh\n", server)
        (record,) = report.bill_of_materials.remote_scripts
        assert record.status == TrustStatus.UNVERIFIED
        assert "Not in the known-script registry" in record.detail

    def test_fetch_error(self):
        """A failed fetch is an error record and is not analyzed."""
        narrator = ScriptedNarrator()
        server = RemoteServer({})
        report = _run(f"curl -fsSL {A_URL} | sh\n", server, narrator=narrator)
        (record,) = report.bill_of_materials.remote_scripts
        assert record.status == TrustStatus.ERROR
        assert "404" in record.detail
        assert report.risk_score == ERROR_RISK_FLOOR
        assert report.sub_reports[0].report is None
        assert len(narrator.calls) == 1

    def test_unexpanded_variable_never_fetched(self):
        """Templated addresses never reach the network."""
        server = RemoteServer({})
        report = _run("curl -fsSL ${REPO_URL}/install.sh | sh\n", server)
        assert server.total_requests == 0
        assert report.bill_of_materials.remote_scripts == []

    def test_duplicate_reference_fetched_once(self):
        """A URL referenced twice is fetched once."""
        server = RemoteServer({A_URL: "echo a\n"})
        script = f"curl -fsSL {A_URL} | sh\nbash <(curl -s {A_URL})\n"
        report = _run(script, server)
        assert server.hits == {A_URL: 1}
        assert len(report.bill_of_materials.remote_scripts) == 1
        assert len(report.sub_reports) == 1

    def test_empty_script_rejected(self):
        """Whitespace-only input is rejected before any work."""
        assessor = RecursiveAssessor(ScriptedNarrator(), registry=KnownScriptRegistry())
        with pytest.raises(ScriptInputError):
            asyncio.run(assessor.analyze("  \n"))


class TestRecursion:
    """Nested references, depth limits and cycles."""

    def test_cycle_terminates_with_truncated_leaf(self):
        """A reference cycle stops at the depth limit with a truncated leaf."""
        server = RemoteServer(
            {
                A_URL: f"curl -s {B_URL} | bash\n",
                B_URL: f"curl -s {A_URL} | bash\n",
            }
        )
        narrator = ScriptedNarrator()
        report = _run(f"curl -s {A_URL} | bash\n", server, narrator=narrator)

        assert server.hits == {A_URL: 1, B_URL: 1}
        assert report.risk_score == 10

        node = report
        while node.sub_reports:
            node = node.sub_reports[0].report
        assert node.truncated
        assert node.report.startswith("Depth limit reached")
        assert node.depth == 4
        # root, a, b, a; the second b is past the limit
        assert len(narrator.calls) == 4

    def test_self_reference_with_depth_two(self):
        """A self-referencing script recurses until max_depth."""
        server = RemoteServer({A_URL: f"curl -s {A_URL} | sh\n"})
        narrator = ScriptedNarrator()
        report = _run(f"curl -s {A_URL} | sh\n", server, narrator=narrator, max_depth=2)
        assert len(narrator.calls) == 3
        assert server.hits == {A_URL: 1}
        assert report.risk_score == 10
        assert "Not analyzed: depth limit reached" in report.sub_reports[0].report.report

    def test_depth_zero_analyzes_root_only(self):
        """max_depth 0 analyzes the root without fetching."""
        server = RemoteServer({A_URL: "echo a\n"})
        narrator = ScriptedNarrator()
        report = _run(f"curl -s {A_URL} | sh\n", server, narrator=narrator, max_depth=0)
        assert len(narrator.calls) == 1
        assert report.sub_reports[0].report.truncated
        assert report.risk_score == 10

    def test_parent_score_never_below_child(self):
        """A parent scores at least as high as its riskiest child."""
        server = RemoteServer({A_URL: "rm -rf ~\n"})
        narrator = ScriptedNarrator(scores={"rm -rf ~\n": 8})
        report = _run(
            f"curl -s {A_URL} | sh\n",
            server,
            narrator=narrator,
            registry=_registry({A_URL: "rm -rf ~\n"}),
        )
        assert report.sub_reports[0].report.risk_score == 8
        assert report.risk_score == 8

    def test_fetch_shared_across_tree(self):
        """Each URL is fetched once per assessment."""
        server = RemoteServer(
            {
                A_URL: "echo a\n",
                B_URL: f"curl -s {A_URL} | sh\n",
            }
        )
        narrator = ScriptedNarrator()
        _run(f"curl -s {A_URL} | sh\ncurl -s {B_URL} | sh\n", server, narrator=narrator)
        assert server.hits == {A_URL: 1, B_URL: 1}
        assert narrator.contents().count("echo a\n") == 2

    def test_bill_of_materials_order(self):
        """The bill of materials lists direct references first, then deeper ones."""
        server = RemoteServer(
            {
                A_URL: f"curl -s {C_URL} | sh\n",
                B_URL: "echo b\n",
                C_URL: "echo c\n",
            }
        )
        report = _run(f"curl -s {B_URL} | sh\ncurl -s {A_URL} | sh\n", server)
        urls = [r.url for r in report.bill_of_materials.remote_scripts]
        assert urls == [A_URL, B_URL, C_URL]
        assert [r.url for r in report.trust_records] == [A_URL, B_URL]

    def test_binaries_union(self):
        """External binaries are the union across the tree."""
        server = RemoteServer({A_URL: "echo a\n"})
        root = f"curl -s {A_URL} | sh\n"
        narrator = ScriptedNarrator(binaries={root: ["helm"], "echo a\n": ["kubectl", "helm"]})
        report = _run(root, server, narrator=narrator)
        assert report.bill_of_materials.external_binaries == ["helm", "kubectl"]
        assert report.sub_reports[0].report.bill_of_materials.external_binaries == [
            "kubectl",
            "helm",
        ]


class TestVerificationResults:
    """What the narrator is told about remote scripts."""

    def test_entries(self):
        """Each remote script is described to the narrator with its status and score."""
        server = RemoteServer({A_URL: "echo a\n"})
        narrator = ScriptedNarrator(scores={"echo a\n": 3})
        root = f"curl -s {A_URL} | sh\ncurl -s {B_URL} | sh\n"
        _run(root, server, narrator=narrator)

        _, results = next(call for call in narrator.calls if call[0] == root)
        ok, failed = results
        assert ok["url"] == A_URL
        assert ok["status"] == "unverified"
        assert ok["riskScore"] == 3
        assert ok["truncated"] is False
        assert ok["digest"] == hash_content(b"echo a\n")
        assert ok["excerpt"] == "echo a\n"

        assert failed["url"] == B_URL
        assert failed["status"] == "error"
        assert "404" in failed["detail"]
        assert "digest" not in failed
        assert "riskScore" not in failed
        assert "excerpt" not in failed

    def test_leaf_gets_empty_results(self):
        """A script with no references gets an empty result list."""
        server = RemoteServer({})
        narrator = ScriptedNarrator()
        _run("echo hi\n", server, narrator=narrator)
        assert narrator.calls == [("echo hi\n", [])]


class TestFailures:
    """Narrator failures abort the analysis."""

    def test_synthesis_error_propagates_and_cancels_siblings(self):
        """A child failure raises and cancels its siblings."""
        server = RemoteServer({A_URL: "FAIL\n", B_URL: "SLOW\n"})
        narrator = ScriptedNarrator(fail_on={"FAIL\n"}, slow_on={"SLOW\n"})
        with pytest.raises(SynthesisError):
            _run(f"curl -s {A_URL} | sh\ncurl -s {B_URL} | sh\n", server, narrator=narrator)
        assert "SLOW\n" not in narrator.finished

    def test_root_synthesis_error(self):
        """A root narrator failure raises."""
        narrator = ScriptedNarrator(fail_on={"echo hi\n"})
        with pytest.raises(SynthesisError):
            _run("echo hi\n", RemoteServer({}), narrator=narrator)


class TestConcurrencyAndLogging:
    """Fetch concurrency cap and state logging."""

    def test_concurrency_cap(self):
        """Fetches stay under max_concurrent_fetches."""
        urls = [f"https://x.io/s{n}.sh" for n in range(6)]
        server = RemoteServer({url: "echo s\n" for url in urls}, delay=0.02)
        script = "".join(f"curl -s {url} | sh\n" for url in urls)
        report = _run(script, server, max_concurrent_fetches=2)
        assert len(report.bill_of_materials.remote_scripts) == 6
        assert server.peak <= 2

    def test_state_transitions_logged(self, caplog):
        """Node state transitions are logged at debug level."""
        caplog.set_level(logging.DEBUG, logger="scriptvet.scanner.orchestrator")
        server = RemoteServer({A_URL: "echo a\n"})
        _run(f"curl -s {A_URL} | sh\n", server)
        messages = [r.getMessage() for r in caplog.records]
        assert "[depth 0] <root>: extracting" in messages
        assert f"[depth 1] {A_URL}: synthesizing" in messages
        assert "[depth 0] <root>: done" in messages


class TestAnalyzeScript:
    """Blocking entry point."""

    def test_sync_wrapper(self):
        """analyze_script runs the assessment to completion."""
        server = RemoteServer({A_URL: "echo a\n"})
        report = analyze_script(
            f"curl -s {A_URL} | sh\n",
            narrator=ScriptedNarrator(),
            registry=_registry({A_URL: "echo a\n"}),
            transport=server.transport,
        )
        assert report.bill_of_materials.remote_scripts[0].status == TrustStatus.VERIFIED
