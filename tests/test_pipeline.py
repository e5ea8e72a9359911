"""Tests for linear stage composition."""

import pytest

from enrichers.pipeline import run_stages, stage_name
from utils.cancellation import OperationCancelled


def add_one(context):
    context.append(1)
    return context


def add_two(context):
    context.append(2)
    return context


def test_stages_run_in_order():
    assert run_stages([add_one, add_two, add_one], []) == [1, 2, 1]


def test_empty_pipeline_returns_context():
    context = {"untouched": True}
    assert run_stages([], context) is context


def test_stage_error_propagates_and_stops():
    calls = []

    def explode(context):
        raise ValueError("bad stage")

    def never(context):
        calls.append("never")
        return context

    with pytest.raises(ValueError, match="bad stage"):
        run_stages([add_one, explode, never], [])
    assert calls == []


def test_stage_returning_none_is_rejected():
    def forgetful(context):
        context.append(0)

    with pytest.raises(TypeError, match="forgetful"):
        run_stages([forgetful], [])


def test_cancelled_token_stops_between_stages(token):
    def cancel(context):
        token.cancel()
        return context

    with pytest.raises(OperationCancelled):
        run_stages([cancel, add_one], [], token=token)


def test_stage_name_for_callable_object():
    class Finalize:
        def __call__(self, context):
            return context

    assert stage_name(add_one) == "add_one"
    assert stage_name(Finalize()) == "Finalize"
