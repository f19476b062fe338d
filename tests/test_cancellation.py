"""Tests for cancellation tokens and the per-repository cancellation service."""

from __future__ import annotations

import logging

import pytest

from index_worker.cancellation import CancellationService, CancellationToken, IndexerCancelledError


def test_token_runs_each_callback_once() -> None:
    token = CancellationToken()
    calls: list[str] = []
    token.on(lambda: calls.append("a"))
    token.on(lambda: calls.append("b"))

    token.cancel()
    token.cancel()

    assert calls == ["a", "b"]
    assert token.is_cancelled


def test_token_runs_late_subscriber_immediately() -> None:
    token = CancellationToken()
    token.cancel()
    calls: list[str] = []

    token.on(lambda: calls.append("late"))

    assert calls == ["late"]


def test_token_isolates_failing_callback(caplog: pytest.LogCaptureFixture) -> None:
    token = CancellationToken()
    calls: list[str] = []

    def explode() -> None:
        raise RuntimeError("boom")

    token.on(explode)
    token.on(lambda: calls.append("after"))

    with caplog.at_level(logging.ERROR):
        token.cancel()

    assert calls == ["after"]
    assert "Cancellation callback failed." in caplog.text


def test_raise_if_cancelled() -> None:
    token = CancellationToken()
    token.raise_if_cancelled()

    token.cancel()

    with pytest.raises(IndexerCancelledError):
        token.raise_if_cancelled()


def test_cancel_index_job_without_entry_is_noop() -> None:
    CancellationService().cancel_index_job("github.com/acme/none")


def test_cancel_index_job_cancels_registered_token_once() -> None:
    service = CancellationService()
    token = CancellationToken()
    fired: list[int] = []
    token.on(lambda: fired.append(1))
    service.register_index_job_token("github.com/acme/widgets", token)

    service.cancel_index_job("github.com/acme/widgets")
    service.cancel_index_job("github.com/acme/widgets")

    assert token.is_cancelled
    assert fired == [1]


def test_cancel_index_job_is_keyed_by_repository() -> None:
    service = CancellationService()
    widgets, gadgets = CancellationToken(), CancellationToken()
    service.register_index_job_token("github.com/acme/widgets", widgets)
    service.register_index_job_token("github.com/acme/gadgets", gadgets)

    service.cancel_index_job("github.com/acme/widgets")

    assert widgets.is_cancelled
    assert not gadgets.is_cancelled


def test_register_replaces_previous_token() -> None:
    service = CancellationService()
    old, new = CancellationToken(), CancellationToken()
    service.register_index_job_token("github.com/acme/widgets", old)
    service.register_index_job_token("github.com/acme/widgets", new)

    service.cancel_index_job("github.com/acme/widgets")

    assert new.is_cancelled
    assert not old.is_cancelled


def test_cancel_index_job_survives_failing_cancel(caplog: pytest.LogCaptureFixture) -> None:
    class BrokenToken(CancellationToken):
        def cancel(self) -> None:
            raise RuntimeError("broken")

    service = CancellationService()
    service.register_index_job_token("github.com/acme/widgets", BrokenToken())

    with caplog.at_level(logging.ERROR):
        service.cancel_index_job("github.com/acme/widgets")

    assert "Cancel index job for github.com/acme/widgets failed." in caplog.text


def test_cancel_callback_may_call_back_into_service() -> None:
    service = CancellationService()
    old, replacement = CancellationToken(), CancellationToken()
    old.on(lambda: service.register_index_job_token("github.com/acme/widgets", replacement))
    service.register_index_job_token("github.com/acme/widgets", old)

    service.cancel_index_job("github.com/acme/widgets")
    service.cancel_index_job("github.com/acme/widgets")

    assert old.is_cancelled
    assert replacement.is_cancelled


def test_cancel_all() -> None:
    service = CancellationService()
    tokens = [CancellationToken(), CancellationToken()]
    service.register_index_job_token("a", tokens[0])
    service.register_index_job_token("b", tokens[1])

    service.cancel_all()

    assert all(token.is_cancelled for token in tokens)
