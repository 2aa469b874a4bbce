import asyncio
import logging
import threading
from unittest.mock import MagicMock

import pytest

import runtracer
from runtracer import tracer as rt_tracer
from runtracer import utils as rt_utils
from runtracer.configuration import Configuration
from runtracer.run_helpers import (
    get_current_run,
    is_tracing,
    trace,
    traceable,
)
from runtracer.run_trees import Run
from runtracer.tracer import Tracer, configure, get_tracer, tracing_context


def _payloads(client: MagicMock) -> tuple[list[dict], list[dict]]:
    creates, updates = [], []
    for call in client.batch_ingest_runs.call_args_list:
        creates.extend(op.to_dict() for op in call.kwargs["create"])
        updates.extend(op.to_dict() for op in call.kwargs["update"])
    return creates, updates


def test_disabled_tracing_runs_code_untouched(disabled_tracer: Tracer, mock_client):
    seen = []

    def func(run: Run) -> int:
        seen.append(get_current_run())
        return 7

    assert not disabled_tracer.tracing_enabled
    assert trace("op", func, tracer=disabled_tracer) == 7
    assert seen == [None]
    disabled_tracer.shutdown()
    mock_client.batch_ingest_runs.assert_not_called()


def test_missing_api_key_disables_tracing(mock_client) -> None:
    tracer = Tracer(Configuration(tracing_enabled=True), client=mock_client)
    assert not tracer.tracing_enabled
    assert trace("op", lambda run: "ok", tracer=tracer) == "ok"
    tracer.shutdown()
    mock_client.batch_ingest_runs.assert_not_called()


def test_trace_round_trip(tracer: Tracer, mock_client) -> None:
    def func(run: Run) -> str:
        assert get_current_run() is run
        run.add_metadata(user="u-1")
        return "answer"

    result = trace(
        "answer_question", func, inputs={"q": "why?"}, tags=["t"], tracer=tracer
    )
    assert result == "answer"
    assert get_current_run() is None
    tracer.shutdown()

    creates, updates = _payloads(mock_client)
    assert len(creates) == 1 and len(updates) == 1
    create, update = creates[0], updates[0]
    assert create["name"] == "answer_question"
    assert create["inputs"] == {"q": "why?"}
    assert create["session_name"] == "unit-tests"
    assert create["tags"] == ["t"]
    assert "outputs" not in create
    assert update["id"] == create["id"]
    assert update["outputs"] == {"result": "answer"}
    assert update["metadata"] == {"user": "u-1"}
    assert "end_time" in update


def test_nested_traces_link_to_parent(tracer: Tracer, mock_client) -> None:
    with tracing_context(tracer):

        def outer(run: Run) -> str:
            return trace("inner", lambda child: "x", run_type="tool")

        trace("outer", outer)
    tracer.shutdown()

    creates, updates = _payloads(mock_client)
    by_name = {c["name"]: c for c in creates}
    outer_run, inner_run = by_name["outer"], by_name["inner"]
    assert "parent_run_id" not in outer_run
    assert inner_run["parent_run_id"] == outer_run["id"]
    assert inner_run["trace_id"] == outer_run["id"]
    assert inner_run["dotted_order"].startswith(outer_run["dotted_order"] + ".")
    assert inner_run["run_type"] == "tool"
    # The inner run ends first.
    assert [u["id"] for u in updates] == [inner_run["id"], outer_run["id"]]


def test_trace_records_and_reraises_errors(tracer: Tracer, mock_client) -> None:
    def func(run: Run) -> None:
        raise ValueError("bad input")

    with pytest.raises(ValueError, match="bad input"):
        trace("failing", func, tracer=tracer)
    assert get_current_run() is None
    tracer.shutdown()

    _, updates = _payloads(mock_client)
    assert updates[0]["error"].startswith("ValueError: bad input")
    assert "outputs" not in updates[0]


def test_trace_invalid_run_type(tracer: Tracer) -> None:
    with pytest.raises(rt_utils.ValidationError):
        trace("op", lambda run: None, run_type="bogus", tracer=tracer)


def test_new_thread_starts_a_new_trace(tracer: Tracer, mock_client) -> None:
    def in_thread() -> None:
        trace("threaded", lambda run: None, tracer=tracer)

    def outer(run: Run) -> None:
        t = threading.Thread(target=in_thread)
        t.start()
        t.join()

    trace("outer", outer, tracer=tracer)
    tracer.shutdown()
    creates, _ = _payloads(mock_client)
    threaded = next(c for c in creates if c["name"] == "threaded")
    assert "parent_run_id" not in threaded


@pytest.mark.asyncio
async def test_trace_coroutine_function(tracer: Tracer, mock_client) -> None:
    async def func(run: Run) -> int:
        await asyncio.sleep(0)
        assert get_current_run() is run
        return 3

    assert await trace("async_op", func, tracer=tracer) == 3
    tracer.shutdown()
    _, updates = _payloads(mock_client)
    assert updates[0]["outputs"] == {"result": 3}


def test_traceable_records_call_arguments(tracer: Tracer, mock_client) -> None:
    @traceable(run_type="tool", tags=["search"], tracer=tracer)
    def search(query: str, limit: int = 5) -> list:
        run = get_current_run()
        assert run is not None and run.name == "search"
        return [query] * limit

    assert search.__name__ == "search"
    assert search("q", limit=2) == ["q", "q"]
    tracer.shutdown()

    creates, updates = _payloads(mock_client)
    assert creates[0]["name"] == "search"
    assert creates[0]["run_type"] == "tool"
    assert creates[0]["inputs"] == {"args": ["q"], "kwargs": {"limit": 2}}
    assert creates[0]["tags"] == ["search"]
    assert updates[0]["outputs"] == {"result": ["q", "q"]}


def test_traceable_without_arguments(tracer: Tracer, mock_client) -> None:
    @traceable
    def noop() -> None:
        return None

    with tracing_context(tracer):
        noop()
    tracer.shutdown()
    creates, updates = _payloads(mock_client)
    assert creates[0]["name"] == "noop"
    assert "inputs" not in creates[0]
    assert "outputs" not in updates[0]


def test_traceable_process_inputs(tracer: Tracer, mock_client) -> None:
    @traceable(
        name="login",
        process_inputs=lambda user, password: {"user": user},
        tracer=tracer,
    )
    def login(user: str, password: str) -> bool:
        return True

    login("alice", "hunter2")
    tracer.shutdown()
    creates, _ = _payloads(mock_client)
    assert creates[0]["name"] == "login"
    assert creates[0]["inputs"] == {"user": "alice"}


def test_traceable_process_inputs_failure_falls_back(
    tracer: Tracer, mock_client, caplog
) -> None:
    def broken(*args, **kwargs) -> dict:
        raise RuntimeError("nope")

    @traceable(process_inputs=broken, tracer=tracer)
    def double(x: int) -> int:
        return x * 2

    with caplog.at_level(logging.WARNING, logger="runtracer.run_helpers"):
        assert double(4) == 8
    tracer.shutdown()
    creates, _ = _payloads(mock_client)
    assert creates[0]["inputs"] == {"args": [4]}
    assert any("process_inputs failed" in r.getMessage() for r in caplog.records)


def test_traceable_reraises(tracer: Tracer, mock_client) -> None:
    @traceable(tracer=tracer)
    def explode() -> None:
        raise KeyError("k")

    with pytest.raises(KeyError):
        explode()
    tracer.shutdown()
    _, updates = _payloads(mock_client)
    assert updates[0]["error"].startswith("KeyError")


def test_traceable_disabled_calls_through(disabled_tracer: Tracer, mock_client):
    @traceable(tracer=disabled_tracer)
    def add(a: int, b: int) -> int:
        assert get_current_run() is None
        return a + b

    assert add(1, 2) == 3
    disabled_tracer.shutdown()
    mock_client.batch_ingest_runs.assert_not_called()


@pytest.mark.asyncio
async def test_traceable_async(tracer: Tracer, mock_client) -> None:
    @traceable(run_type="llm", tracer=tracer)
    async def generate(prompt: str) -> str:
        run = get_current_run()
        run.set_token_usage(input_tokens=3, output_tokens=4)
        await asyncio.sleep(0)
        return prompt.upper()

    @traceable(tracer=tracer)
    async def pipeline(prompt: str) -> str:
        return await generate(prompt)

    assert await pipeline("hi") == "HI"
    tracer.shutdown()
    creates, updates = _payloads(mock_client)
    by_name = {c["name"]: c for c in creates}
    assert by_name["generate"]["parent_run_id"] == by_name["pipeline"]["id"]
    generate_update = next(u for u in updates if u["id"] == by_name["generate"]["id"])
    assert generate_update["extra"]["metadata"]["usage_metadata"]["total_tokens"] == 7


@pytest.mark.asyncio
async def test_concurrent_tasks_get_separate_parents(tracer: Tracer, mock_client):
    @traceable(tracer=tracer)
    async def leaf(i: int) -> int:
        await asyncio.sleep(0)
        return i

    @traceable(tracer=tracer)
    async def branch(i: int) -> int:
        return await leaf(i)

    await asyncio.gather(branch(1), branch(2))
    tracer.shutdown()
    creates, _ = _payloads(mock_client)
    branches = {c["inputs"]["args"][0]: c for c in creates if c["name"] == "branch"}
    leaves = {c["inputs"]["args"][0]: c for c in creates if c["name"] == "leaf"}
    for i in (1, 2):
        assert leaves[i]["parent_run_id"] == branches[i]["id"]
        assert "parent_run_id" not in branches[i]


def test_configure_installs_global_tracer(mock_client) -> None:
    installed = configure(
        client=mock_client,
        api_key="k",
        project="configured",
        tracing_enabled=True,
        flush_interval=60,
    )
    assert get_tracer() is installed
    assert installed.config.project == "configured"
    assert installed.tracing_enabled

    replacement = configure(client=mock_client, api_key="k", tracing_enabled=True)
    assert get_tracer() is replacement
    assert not installed.batch_processor.running


def test_configure_validates(mock_client) -> None:
    with pytest.raises(rt_utils.ConfigurationError):
        configure(client=mock_client, tracing_enabled=True)
    with pytest.raises(rt_utils.ConfigurationError):
        configure(
            Configuration(api_key="k"), client=mock_client, batch_size=0
        )


def test_reset_forgets_global_tracer(mock_client) -> None:
    installed = configure(client=mock_client, api_key="k", tracing_enabled=True)
    rt_tracer.reset()
    fresh = get_tracer()
    assert fresh is not installed
    # Tracing is off unless RUNTRACER_TRACING says otherwise.
    assert not fresh.tracing_enabled


def test_get_tracer_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("RUNTRACER_TRACING", "true")
    monkeypatch.setenv("RUNTRACER_API_KEY", "env-key")
    monkeypatch.setenv("RUNTRACER_PROJECT", "from-env")
    tracer = get_tracer()
    assert tracer.tracing_enabled
    assert tracer.config.project == "from-env"
    assert get_tracer() is tracer


def test_tracing_context_overrides_global(tracer: Tracer, mock_client) -> None:
    global_tracer = configure(client=mock_client, api_key="k", tracing_enabled=True)
    with tracing_context(tracer):
        assert get_tracer() is tracer
    assert get_tracer() is global_tracer


def test_public_exports() -> None:
    assert runtracer.trace is trace
    assert runtracer.traceable is traceable
    assert runtracer.get_tracer is get_tracer
    assert "Run" in dir(runtracer)
    with pytest.raises(AttributeError):
        runtracer.not_a_real_attribute  # noqa: B018


def test_is_tracing_reflects_active_run(tracer: Tracer) -> None:
    assert not is_tracing()
    assert trace("op", lambda run: is_tracing(), tracer=tracer) is True
    assert not is_tracing()
