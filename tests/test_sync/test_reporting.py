"""Tests for forwarding error logs to the reporting endpoint."""

import json
import logging
import sys

import httpx
import pytest

from protech.sync.reporting import ErrorReporter, ErrorReportingHandler


@pytest.fixture
def captured():
    return []


@pytest.fixture
def reporter(captured):
    def handler(request):
        captured.append(request)
        return httpx.Response(202)

    reporter = ErrorReporter(logger_name="protech.test_reporting",
                             transport=httpx.MockTransport(handler))
    yield reporter
    reporter.detach()


class TestErrorReporter:
    def test_errors_are_posted(self, reporter, captured):
        reporter.configure("https://errors.example.com/api", "staging")
        logging.getLogger("protech.test_reporting.queue").error(
            "Giving up on %s", "customer/1"
        )

        assert len(captured) == 1
        event = json.loads(captured[0].content)
        assert event["message"] == "Giving up on customer/1"
        assert event["environment"] == "staging"
        assert event["level"] == "error"

    def test_warnings_are_not_posted(self, reporter, captured):
        reporter.configure("https://errors.example.com/api", "staging")
        logging.getLogger("protech.test_reporting").warning("meh")
        assert captured == []

    def test_no_dsn_means_no_handler(self, reporter, captured):
        reporter.configure(None, "development")
        assert reporter.dsn is None
        logging.getLogger("protech.test_reporting").error("boom")
        assert captured == []

    def test_reconfigure_replaces_handler(self, reporter):
        reporter.configure("https://a.example.com", "staging")
        reporter.configure("https://b.example.com", "production")
        handlers = [
            h for h in logging.getLogger("protech.test_reporting").handlers
            if isinstance(h, ErrorReportingHandler)
        ]
        assert len(handlers) == 1
        assert reporter.dsn == "https://b.example.com"


class TestErrorReportingHandler:
    def test_exception_included(self):
        handler = ErrorReportingHandler("https://errors.example.com", "prod")
        try:
            raise ValueError("bad payload")
        except ValueError:
            record = logging.LogRecord(
                "protech", logging.ERROR, __file__, 1, "failed", None,
                exc_info=sys.exc_info(),
            )
        event = handler.build_event(record)
        handler.close()
        assert "ValueError: bad payload" in event["exception"]

    def test_transport_failure_goes_to_handle_error(self, monkeypatch):
        def refuse(request):
            raise httpx.ConnectError("down", request=request)

        handler = ErrorReportingHandler(
            "https://errors.example.com", "prod",
            transport=httpx.MockTransport(refuse),
        )
        calls = []
        monkeypatch.setattr(handler, "handleError", calls.append)
        record = logging.LogRecord("protech", logging.ERROR, __file__, 1,
                                   "boom", None, None)
        handler.emit(record)
        handler.close()
        assert calls == [record]
