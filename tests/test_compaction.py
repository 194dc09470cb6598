"""Tests for automatic context compression and file recovery."""

from __future__ import annotations

import logging

import pytest

from tandem.api.errors import ApiStatusError
from tandem.config import Settings
from tandem.engine.cancellation import CancellationToken, TurnCancelled
from tandem.engine.compaction import (
    COMPACTION_NOTICE,
    COMPRESSION_PROMPT,
    SUMMARY_SYSTEM_PROMPT,
    Compactor,
    RecoveryBudget,
    TokenEstimator,
)
from tandem.messages import AssistantMessage, ProgressMessage, Usage, create_user_message, extract_text
from tandem.session.context import SessionContext
from tests.conftest import ScriptedClient, make_assistant

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _conversation(input_tokens: int) -> list:
    return [
        create_user_message("please refactor the parser"),
        make_assistant("Working on it.", usage=Usage(input_tokens=input_tokens, output_tokens=0)),
        create_user_message("continue"),
    ]


def _summary(text: str = "## Technical Context\nPython parser refactor.", output_tokens: int = 500):
    return make_assistant(text, usage=Usage(input_tokens=90_000, output_tokens=output_tokens))


def _make_compactor(client, session, **kwargs) -> Compactor:
    kwargs.setdefault("context_limit", 100_000)
    return Compactor(client, session, **kwargs)


# ---------------------------------------------------------------------------
# Token counting
# ---------------------------------------------------------------------------


class TestTokenEstimator:
    def test_default_ratio(self):
        estimator = TokenEstimator()
        assert estimator.estimate("x" * 400) == 100
        assert estimator.estimate("") == 1

    def test_progress_messages_are_free(self):
        assert TokenEstimator().estimate_message(ProgressMessage(tool_use_id="t", text="x" * 1000)) == 0

    def test_calibrate_moves_towards_observed(self):
        estimator = TokenEstimator()
        estimator.calibrate(10_000, 3_000)  # observed 0.3 tokens per char
        assert estimator.ratio == pytest.approx(0.1 * 0.3 + 0.9 * 0.25)
        assert estimator.samples == 1

    def test_calibrate_ignores_small_and_empty_samples(self):
        estimator = TokenEstimator()
        estimator.calibrate(0, 100)
        estimator.calibrate(10_000, 0)
        estimator.calibrate(500, 2_500)
        assert estimator.samples == 0
        assert estimator.ratio == 0.25

    def test_calibrate_clamps_outliers(self):
        estimator = TokenEstimator()
        for _ in range(50):
            estimator.calibrate(2_000, 30_000)  # 15 tokens per char
        assert estimator.ratio <= TokenEstimator.MAX_RATIO
        # A 100KB tool result stays within a plausible token range
        assert estimator.estimate("x" * 100_000) <= 50_000


class TestShouldCompress:
    def test_uses_last_reported_usage(self, session):
        compactor = _make_compactor(ScriptedClient(), session)
        messages = _conversation(50_000)
        assert compactor.count_tokens(messages) == 50_000 + compactor.estimator.estimate_messages(messages[2:])

    def test_below_threshold(self, session):
        compactor = _make_compactor(ScriptedClient(), session)
        assert not compactor.should_compress(_conversation(50_000))

    def test_too_few_messages(self, session):
        compactor = _make_compactor(ScriptedClient(), session)
        messages = _conversation(99_000)[:2]
        assert not compactor.should_compress(messages)

    def test_disabled(self, session):
        compactor = _make_compactor(ScriptedClient(), session, enabled=False)
        assert not compactor.should_compress(_conversation(99_000))

    def test_from_settings(self, session):
        settings = Settings(
            ANTHROPIC_API_KEY="k",
            context_limit=50_000,
            compaction_threshold_ratio=0.8,
            recovery_max_files=2,
            compaction_model="claude-haiku-4-5",
        )
        compactor = Compactor.from_settings(ScriptedClient(), session, settings)
        assert compactor.threshold == 40_000
        assert compactor.budget.max_files == 2
        assert compactor.model == "claude-haiku-4-5"


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------


class TestMaybeCompress:
    @pytest.mark.asyncio
    async def test_compresses_over_threshold(self, session, tmp_path):
        source = tmp_path / "parser.py"
        source.write_text("def parse():\n    return 1\n")
        await session.files.record_read(str(source))
        session.reminders.generate(True, "a1")

        client = ScriptedClient([_summary()])
        compactor = _make_compactor(client, session)
        messages = _conversation(95_000)

        compacted, did = await compactor.maybe_compress(messages)

        assert did
        assert compactor.count_tokens(compacted) < 92_000
        assert extract_text(compacted[0]) == COMPACTION_NOTICE
        assert compacted[0].is_meta
        summary = compacted[1]
        assert isinstance(summary, AssistantMessage)
        assert extract_text(summary).startswith("## Technical Context")
        assert summary.usage.input_tokens == 0
        assert summary.usage.output_tokens == 500
        recovered = extract_text(compacted[2])
        assert f"**Recovered File: {source}**" in recovered
        assert "     1\tdef parse():" in recovered

        # Session caches were reset
        assert session.files.session_files() == []
        assert session.reminders.state.reminders_sent == set()

    @pytest.mark.asyncio
    async def test_summary_request_shape(self, session):
        client = ScriptedClient([_summary()])
        compactor = _make_compactor(client, session, model="small-model")
        tools = [{"name": "read_file", "description": "", "input_schema": {}}]

        await compactor.maybe_compress(_conversation(95_000), tools=tools)

        (request,) = client.requests
        assert request.system_prompt == [SUMMARY_SYSTEM_PROMPT]
        assert request.model == "small-model"
        assert request.tools == tools
        assert request.messages[-1]["role"] == "user"
        assert request.messages[-1]["content"][-1]["text"] == COMPRESSION_PROMPT

    @pytest.mark.asyncio
    async def test_below_threshold_untouched(self, session):
        client = ScriptedClient()
        messages = _conversation(10_000)
        compacted, did = await _make_compactor(client, session).maybe_compress(messages)
        assert compacted is messages and not did
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_api_failure_keeps_original(self, session, caplog):
        client = ScriptedClient([ApiStatusError(500, "server exploded")])
        messages = _conversation(95_000)
        session.reminders.generate(True, "a1")

        with caplog.at_level(logging.ERROR, logger="tandem.engine.compaction"):
            compacted, did = await _make_compactor(client, session).maybe_compress(messages)

        assert compacted is messages and not did
        assert "Compaction failed" in caplog.text
        # No reset on failure
        assert session.reminders.state.reminders_sent != set()

    @pytest.mark.asyncio
    async def test_empty_summary_keeps_original(self, session):
        client = ScriptedClient([_summary(text="   ")])
        messages = _conversation(95_000)
        compacted, did = await _make_compactor(client, session).maybe_compress(messages)
        assert compacted is messages and not did

    @pytest.mark.asyncio
    async def test_oversized_summary_keeps_original(self, session):
        client = ScriptedClient([_summary(output_tokens=95_000)])
        messages = _conversation(95_000)
        compacted, did = await _make_compactor(client, session).maybe_compress(messages)
        assert compacted is messages and not did

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, session):
        token = CancellationToken()
        token.cancel()
        client = ScriptedClient([_summary()])
        with pytest.raises(TurnCancelled):
            await _make_compactor(client, session).maybe_compress(_conversation(95_000), token)

    @pytest.mark.asyncio
    async def test_drops_recovered_files_to_fit(self, session, tmp_path):
        # Two ~5k token files against a 9.2k threshold: only the newest fits
        for name in ("old.py", "new.py"):
            path = tmp_path / name
            path.write_text("x" * 20_000)
            await session.files.record_read(str(path))
        session.files.file_info(str(tmp_path / "old.py")).last_read = 1.0
        session.files.file_info(str(tmp_path / "new.py")).last_read = 2.0

        client = ScriptedClient([_summary(output_tokens=1_000)])
        compactor = _make_compactor(
            client,
            session,
            context_limit=10_000,
            budget=RecoveryBudget(max_files=5, max_tokens_per_file=10_000, max_total_tokens=50_000),
        )
        compacted, did = await compactor.maybe_compress(_conversation(9_500))

        assert did
        assert len(compacted) == 3
        assert "new.py" in extract_text(compacted[2])


# ---------------------------------------------------------------------------
# File selection
# ---------------------------------------------------------------------------


class TestSelectFiles:
    @pytest.mark.asyncio
    async def test_per_file_truncation(self, tmp_path):
        session = SessionContext()
        path = tmp_path / "big.py"
        path.write_text("y" * 1_000)
        await session.files.record_read(str(path))

        compactor = _make_compactor(
            ScriptedClient(),
            session,
            budget=RecoveryBudget(max_files=5, max_tokens_per_file=100, max_total_tokens=1_000),
        )
        (recovered,) = await compactor.select_files()
        assert recovered.truncated
        assert recovered.tokens == 100
        assert len(recovered.content) == 400

    @pytest.mark.asyncio
    async def test_total_cap_and_max_files(self, tmp_path):
        session = SessionContext()
        for i in range(4):
            path = tmp_path / f"f{i}.py"
            path.write_text("z" * 400)  # 100 tokens each
            await session.files.record_read(str(path))
            session.files.file_info(str(path)).last_read = float(i)

        compactor = _make_compactor(
            ScriptedClient(),
            session,
            budget=RecoveryBudget(max_files=3, max_tokens_per_file=150, max_total_tokens=250),
        )
        recovered = await compactor.select_files()
        assert [r.path for r in recovered] == [str(tmp_path / "f3.py"), str(tmp_path / "f2.py")]
        assert sum(r.tokens for r in recovered) <= 250
