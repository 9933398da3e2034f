"""Тесты рассылки писем"""
from types import SimpleNamespace

import pytest

from app.config import settings
from app.models import DigestRun, RunStatus
from app.services.email.provider import AUTH_ERROR_MESSAGE, ProviderAuthError, ProviderRateLimitError, classify_provider_error
from app.services.email.renderer import TemplateRenderer
from app.services.email.sender import EmailSender
from tests.conftest import FakeEmailProvider, make_event

TEMPLATE = SimpleNamespace(
    id="tpl",
    subject_template="{{ digest.name }}:\n {{ eventsCount }} событий",
    body_html_template="<p>{{ events[0].data.title }}</p>",
    body_text_template="{% for e in events %}{{ e.uid }}\n{% endfor %}",
)
DIGEST_INFO = {"id": "dg-1", "name": "Shares", "account_id": "acc-1"}


@pytest.fixture
async def run_id(store, add_digest):
    await add_digest()
    await store.create_run(DigestRun(id="run-1", digest_id="dg-1", status=RunStatus.PROCESSING.value))
    return "run-1"


async def test_partial_failure_continues_with_other_recipients(store, run_id):
    provider = FakeEmailProvider(fail_for=["b@example.com"])
    sender = EmailSender(store, provider=provider)
    events = [make_event("e1", data={"title": "Q1"})]

    result = await sender.send_digest(run_id, TEMPLATE, events, ["a@example.com", "b@example.com", "c@example.com"], DIGEST_INFO)

    assert (result.sent, result.failed) == (2, 1)
    assert [m.to for m in provider.sent] == ["a@example.com", "c@example.com"]

    logs = {log.recipient: log for log in await store.list_email_logs(run_id)}
    assert logs["a@example.com"].status == "sent"
    assert logs["a@example.com"].provider_message_id
    assert logs["b@example.com"].status == "failed"
    assert "unavailable" in logs["b@example.com"].error
    assert logs["c@example.com"].status == "sent"


async def test_renders_once_for_all_recipients(store, run_id):
    provider = FakeEmailProvider()
    sender = EmailSender(store, provider=provider)
    events = [make_event("e1", data={"title": "<b>Q1</b>"})]

    await sender.send_digest(run_id, TEMPLATE, events, ["a@example.com", "b@example.com"], DIGEST_INFO)

    first, second = provider.sent
    assert first.subject == second.subject == "Shares: 1 событий"
    assert first.html == "<p>&lt;b&gt;Q1&lt;/b&gt;</p>"
    assert first.text == "e1"
    assert {"name": "digest_run_id", "value": run_id} in first.tags


async def test_test_email_prefix_and_no_logs(store, run_id):
    provider = FakeEmailProvider()
    sender = EmailSender(store, provider=provider)
    template = SimpleNamespace(**{**vars(TEMPLATE), "subject_template": "[TEST] Weekly"})

    result = await sender.send_test_email(template, [make_event("e1", data={"title": "x"})], "qa@example.com", DIGEST_INFO)

    assert result["success"] is True
    assert result["subject"] == "[TEST] Weekly"
    assert provider.sent[0].subject == "[TEST] Weekly"
    assert await store.list_email_logs(run_id) == []


async def test_test_email_auth_error_message(store):
    sender = EmailSender(store, provider=FakeEmailProvider(auth_error=True))

    result = await sender.send_test_email(TEMPLATE, [make_event("e1", data={"title": "x"})], "qa@example.com", DIGEST_INFO)

    assert result == {"success": False, "error": AUTH_ERROR_MESSAGE}


def test_classify_provider_error():
    assert isinstance(classify_provider_error(401, "unauthorized"), ProviderAuthError)
    assert isinstance(classify_provider_error(429, "slow down"), ProviderRateLimitError)
    assert str(classify_provider_error(403, "forbidden")) == AUTH_ERROR_MESSAGE


async def test_update_status_and_run_statistics(store, run_id):
    sender = EmailSender(store, provider=FakeEmailProvider())
    await sender.send_digest(run_id, TEMPLATE, [make_event("e1", data={"title": "x"})], ["a@example.com", "b@example.com"], DIGEST_INFO)
    logs = {log.recipient: log for log in await store.list_email_logs(run_id)}
    provider_id = logs["a@example.com"].provider_message_id

    assert await sender.update_email_status(provider_id, "delivered") is True
    assert await sender.update_email_status(provider_id, "opened") is True
    assert await sender.update_email_status(provider_id, "opened") is True
    assert await sender.update_email_status("unknown-id", "opened") is False

    log = await store.get_email_log_by_provider_id(provider_id)
    assert log.open_count == 2
    assert log.delivered_at is not None

    stats = await sender.get_run_statistics(run_id)
    assert stats["total"] == 2
    assert stats["sent"] == 1
    assert stats["opened"] == 1
    assert stats["openRate"] == 50


def test_preview_context():
    renderer = TemplateRenderer()
    events = [make_event("e1", event_type="file.share"), make_event("e2", event_type="comment.create")]
    context = renderer.build_context(events, "Shares", "acc-1")

    assert context["eventsCount"] == 2
    assert context["stats"]["byType"] == {"file.share": 1, "comment.create": 1}
    assert set(context["groups"]) == {"file.share", "comment.create"}
    assert context["digest"]["timezone"] == settings.DEFAULT_DIGEST_TIMEZONE

    context = renderer.build_context(events, "Shares", "acc-1", timezone_name="Europe/Berlin")
    assert context["digest"] == {"name": "Shares", "timezone": "Europe/Berlin"}


def test_template_cache_is_bounded():
    renderer = TemplateRenderer(cache_size=2)
    context = renderer.build_context([make_event("e1", data={"title": "Q1"})], "Shares", "acc-1")

    for version in range(5):
        edited = SimpleNamespace(
            id="tpl",
            subject_template=f"v{version}",
            body_html_template=f"<p>v{version}: {{{{ events[0].data.title }}}}</p>",
            body_text_template=None,
        )
        assert renderer.render(edited, context).html == f"<p>v{version}: Q1</p>"

    assert renderer._html_template.cache_info().currsize == 2
    assert renderer._text_template.cache_info().currsize == 2
