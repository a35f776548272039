import pytest

from relayci.conditions import ConditionContext, evaluate, parse_condition
from relayci.errors import ConditionError
from relayci.model import JobStatus

S, F, C, K = JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.CANCELLED, JobStatus.SKIPPED


def ctx(statuses=None, **kwargs):
    return ConditionContext(statuses=dict(statuses or {}), **kwargs)


def test_default_is_success_of_all_dependencies():
    assert evaluate(None, ctx({"a": S, "b": S})) is True
    assert evaluate(None, ctx({"a": S, "b": F})) is False
    assert evaluate(None, ctx({"a": K})) is False


def test_optional_failure_does_not_block_success():
    assert evaluate(None, ctx({"a": F}, optional={"a"})) is True


def test_status_functions():
    failed = ctx({"a": F})
    assert evaluate("failure()", failed) is True
    assert evaluate("always()", failed) is True
    assert evaluate("success()", failed) is False
    assert evaluate("cancelled()", ctx(cancelled=True)) is True
    assert evaluate("success()", ctx(cancelled=True)) is False


def test_expression_without_status_function_implies_success():
    data = {"event": {"branch": "main"}}
    assert evaluate("event.branch == 'main'", ctx({"a": S}, data=data)) is True
    assert evaluate("event.branch == 'main'", ctx({"a": F}, data=data)) is False
    assert evaluate("always() && event.branch == 'main'", ctx({"a": F}, data=data)) is True


def test_comparisons_and_functions():
    data = {
        "event": {"ref": "refs/heads/release/1.2", "kind": "push"},
        "inputs": {"count": "3", "labels": ["deploy", "urgent"]},
    }
    c = ctx(data=data)
    assert evaluate("startsWith(event.ref, 'refs/heads/release/')", c)
    assert evaluate("endsWith(event.ref, '1.2')", c)
    assert evaluate("contains(inputs.labels, 'deploy')", c)
    assert evaluate("inputs.count >= 2", c)
    assert evaluate("event.kind != 'schedule' && !(event.kind == 'pull_request')", c)
    assert evaluate("event['kind'] == 'PUSH'", c)
    assert not evaluate("inputs.missing", c)


def test_template_wrapper_is_stripped():
    assert parse_condition("${{ always() }}").source == "always()"


def test_needs_results_are_visible():
    data = {"needs": {"scan": {"result": "failure"}}}
    assert evaluate("always() && needs.scan.result == 'failure'", ctx({"scan": F}, data=data))


@pytest.mark.parametrize("bad", ["", "a ==", "foo()", "success(1)", "a @ b", "(a", "a.'x'"])
def test_syntax_errors_raise(bad):
    with pytest.raises(ConditionError):
        parse_condition(bad)


def test_failure_looks_past_direct_dependencies():
    # build failed, so test was skipped; a handler after test still fires
    handler = ctx({"test": K}, upstream={"build": F, "test": K})
    assert evaluate("failure()", handler) is True
    assert evaluate("success()", handler) is False
    assert evaluate("failure()", ctx({"test": S}, upstream={"build": S, "test": S})) is False
