"""Tests for template rendering and the SMTP dispatcher."""

import smtplib

import pytest

from proposalai import mailer
from proposalai.mailer import DISPATCH_FAILURE, DISPATCH_TIMEOUT, SMTPDispatcher, render_template


class FakeSMTP:
    instances = []
    fail_with = None

    def __init__(self, server, port, timeout=None):
        self.server, self.port, self.timeout = server, port, timeout
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        if FakeSMTP.fail_with:
            raise FakeSMTP.fail_with
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        self.credentials = (user, password)

    def send_message(self, msg):
        self.messages.append(msg)


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(mailer.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def smtp_dispatcher():
    return SMTPDispatcher(
        server="smtp.test", port=2525, user="bot", password="secret",
        sender="proposals@acme.test", bcc_email="", timeout=5,
    )


class TestRenderTemplate:
    def test_substitutes_variables(self):
        assert render_template("Hi {{ client_name }}", {"client_name": "Ana"}) == "Hi Ana"

    def test_unknown_variables_are_empty(self):
        assert render_template("Hi {{ nickname }}!", {}) == "Hi !"

    def test_unknown_attributes_are_empty(self):
        assert render_template("Hi {{ client.first_name }}{{ a['b'].c }}!", {}) == "Hi !"

    def test_syntax_error_falls_back_to_raw_text(self):
        assert render_template("Hi {{ client_name", {"client_name": "Ana"}) == "Hi {{ client_name"

    def test_python_internals_not_reachable(self):
        text = "{{ ''.__class__.__mro__[1].__subclasses__()[:3] }}"
        rendered = render_template(text, {})
        assert "<class" not in rendered

    def test_autoescape_for_html_bodies(self):
        ctx = {"title": "<b>Deal</b> & co"}
        assert render_template("{{ title }}", ctx, autoescape=True) == "&lt;b&gt;Deal&lt;/b&gt; &amp; co"
        assert render_template("{{ title }}", ctx) == "<b>Deal</b> & co"


class TestSMTPDispatcher:
    def test_sends_multipart_and_returns_message_id(self, smtp, smtp_dispatcher):
        result = smtp_dispatcher.send("jane@acme.test", "Hello", "<p>Hello <b>Jane</b></p>")

        assert result.ok is True
        assert result.message_id.endswith("@acme.test>")
        (conn,) = smtp.instances
        assert (conn.server, conn.port, conn.timeout) == ("smtp.test", 2525, 5)
        assert conn.credentials == ("bot", "secret")
        (msg,) = conn.messages
        assert msg["To"] == "jane@acme.test"
        assert msg["Message-ID"] == result.message_id
        assert msg["Bcc"] is None
        plain, html = msg.get_payload()
        assert plain.get_content_type() == "text/plain"
        assert "Hello **Jane**" in plain.get_payload()
        assert html.get_content_type() == "text/html"

    def test_bcc_added_when_configured(self, smtp):
        dispatcher = SMTPDispatcher(server="smtp.test", port=25, user="u", password="p",
                                    sender="proposals@acme.test", bcc_email="audit@acme.test")
        dispatcher.send("jane@acme.test", "Hi", "<p>Hi</p>")
        assert smtp.instances[0].messages[0]["Bcc"] == "audit@acme.test"

    def test_timeout_reported(self, smtp, smtp_dispatcher):
        smtp.fail_with = TimeoutError("timed out")
        result = smtp_dispatcher.send("jane@acme.test", "Hello", "<p>Hello</p>")
        assert result.ok is False
        assert result.error_kind == DISPATCH_TIMEOUT

    def test_smtp_error_reported(self, smtp, smtp_dispatcher):
        smtp.fail_with = smtplib.SMTPRecipientsRefused({"jane@acme.test": (550, b"no such user")})
        result = smtp_dispatcher.send("jane@acme.test", "Hello", "<p>Hello</p>")
        assert result.ok is False
        assert result.error_kind == DISPATCH_FAILURE
        assert result.message_id is None

    def test_connection_refused_reported(self, smtp, smtp_dispatcher):
        smtp.fail_with = ConnectionRefusedError("refused")
        result = smtp_dispatcher.send("jane@acme.test", "Hello", "<p>Hello</p>")
        assert result.error_kind == DISPATCH_FAILURE
        assert result.error == "refused"
