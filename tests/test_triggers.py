"""Tests for trigger filtering, templates and providers."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from driftwatch.exceptions import (
    ConfigurationError,
    InstallNotSupportedError,
    ScriptExecutionError,
    ScriptTimeoutError,
)
from driftwatch.schemas.container import validate
from driftwatch.schemas.report import ContainerReport
from driftwatch.services.event_bus import CONTAINER_REPORT, CONTAINER_REPORTS
from driftwatch.services.triggers import (
    CommandTrigger,
    DiscordTrigger,
    GotifyTrigger,
    HttpTrigger,
    NtfyTrigger,
    ScriptTrigger,
    TelegramTrigger,
    Trigger,
    is_threshold_reached,
    parse_trigger_reference,
)
from driftwatch.services.triggers.script import script_arguments
from driftwatch.services.triggers.telegram import escape_markdown


class RecordingTrigger(Trigger):
    provider = "recording"

    def __init__(self, name="test", configuration=None):
        super().__init__(name, configuration)
        self.triggered = []
        self.batches = []

    async def trigger(self, container):
        self.triggered.append(container)

    async def trigger_batch(self, containers):
        self.batches.append(containers)


class RecordingTransport:
    """httpx handler recording requests."""

    def __init__(self, response=None):
        self.requests = []
        self.response = response or httpx.Response(200, json={"ok": True})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def update(make_container):
    """Container with a major update (1.2.0 -> 2.0.0)."""
    return validate(make_container(result={"tag": "2.0.0"}))


def with_remote(make_container, remote):
    return validate(make_container(result={"tag": remote}))


class TestThreshold:
    """Tests for the threshold truth table."""

    @pytest.mark.parametrize(
        "remote,threshold,expected",
        [
            ("2.0.0", "all", True),
            ("2.0.0", "major", True),
            ("2.0.0", "minor", False),
            ("2.0.0", "patch", False),
            ("1.3.0", "minor", True),
            ("1.3.0", "patch", False),
            ("1.2.1", "patch", True),
            ("1.2.1", "minor", True),
            ("1.3.0", "MINOR", True),
        ],
    )
    def test_tag_updates(self, make_container, remote, threshold, expected):
        assert is_threshold_reached(with_remote(make_container, remote), threshold) is expected

    @pytest.mark.parametrize("threshold", ["all", "major", "minor", "patch"])
    def test_digest_always_admitted(self, make_container, threshold):
        container = validate(
            make_container(
                image={"tag": {"value": "latest", "semver": False}, "digest": {"watch": True, "value": "sha256:a"}},
                result={"tag": "latest", "digest": "sha256:b"},
            )
        )
        assert is_threshold_reached(container, threshold) is True

    def test_unknown_diff_admitted(self, make_container):
        container = validate(
            make_container(image={"tag": {"value": "latest", "semver": False}}, result={"tag": "stable"})
        )
        assert container.update_kind.semver_diff == "unknown"
        assert is_threshold_reached(container, "patch") is True


class TestTriggerFiltering:
    """Tests for include/exclude and report dispatch."""

    def test_parse_reference(self):
        assert parse_trigger_reference("ntfy.ops") == ("ntfy.ops", "all")
        assert parse_trigger_reference(" ntfy.ops : minor ") == ("ntfy.ops", "minor")
        assert parse_trigger_reference("ntfy.ops:bogus") == ("ntfy.ops", "all")

    def test_include(self, make_container):
        trigger = RecordingTrigger()
        included = validate(make_container(triggerInclude="ntfy.ops, recording.test", result={"tag": "2.0.0"}))
        other = validate(make_container(triggerInclude="ntfy.ops", result={"tag": "2.0.0"}))
        limited = validate(make_container(triggerInclude="recording.test:minor", result={"tag": "2.0.0"}))
        assert trigger.must_trigger(included)
        assert not trigger.must_trigger(other)
        assert not trigger.must_trigger(limited)

    def test_exclude(self, make_container):
        trigger = RecordingTrigger()
        excluded = validate(make_container(triggerExclude="recording.test", result={"tag": "2.0.0"}))
        excluded_major_only = validate(make_container(triggerExclude="recording.test:minor", result={"tag": "2.0.0"}))
        assert not trigger.must_trigger(excluded)
        assert trigger.must_trigger(excluded_major_only)

    @pytest.mark.asyncio
    async def test_once_requires_change(self, update):
        trigger = RecordingTrigger()
        await trigger.handle_container_report(ContainerReport(update, changed=False))
        assert trigger.triggered == []

        await trigger.handle_container_report(ContainerReport(update, changed=True))
        assert trigger.triggered == [update]

    @pytest.mark.asyncio
    async def test_once_disabled(self, update):
        trigger = RecordingTrigger(configuration={"once": False})
        await trigger.handle_container_report(ContainerReport(update, changed=False))
        assert trigger.triggered == [update]

    @pytest.mark.asyncio
    async def test_no_update_never_fires(self, make_container):
        trigger = RecordingTrigger()
        container = validate(make_container(result={"tag": "1.2.0"}))
        await trigger.handle_container_report(ContainerReport(container, changed=True))
        assert trigger.triggered == []

    @pytest.mark.asyncio
    async def test_threshold_filters(self, update):
        trigger = RecordingTrigger(configuration={"threshold": "minor"})
        await trigger.handle_container_report(ContainerReport(update, changed=True))
        assert trigger.triggered == []

    @pytest.mark.asyncio
    async def test_batch(self, update, make_container):
        trigger = RecordingTrigger(configuration={"mode": "batch"})
        no_update = validate(make_container(id="c2", name="db", result={"tag": "1.2.0"}))
        await trigger.handle_container_reports(
            [ContainerReport(update, changed=True), ContainerReport(no_update, changed=True)]
        )
        assert trigger.batches == [[update]]

        await trigger.handle_container_reports([ContainerReport(no_update, changed=True)])
        assert len(trigger.batches) == 1

    @pytest.mark.asyncio
    async def test_failure_isolated(self, update):
        trigger = RecordingTrigger()
        trigger.trigger = AsyncMock(side_effect=RuntimeError("boom"))
        await trigger.handle_container_report(ContainerReport(update, changed=True))
        trigger.trigger.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_subscribes_by_mode(self, event_bus):
        simple = RecordingTrigger("simple")
        batch = RecordingTrigger("batch", {"mode": "batch"})
        manual = RecordingTrigger("manual", {"auto": False})
        for trigger in (simple, batch, manual):
            await trigger.start(event_bus)

        assert event_bus.subscriber_count(CONTAINER_REPORT) == 1
        assert event_bus.subscriber_count(CONTAINER_REPORTS) == 1

        await simple.stop(event_bus)
        assert event_bus.subscriber_count(CONTAINER_REPORT) == 0

    def test_invalid_configuration(self):
        with pytest.raises(ConfigurationError):
            RecordingTrigger(configuration={"mode": "sometimes"})
        with pytest.raises(ConfigurationError):
            RecordingTrigger(configuration={"unknown": "x"})

    @pytest.mark.asyncio
    async def test_install_not_supported_by_default(self, update):
        with pytest.raises(InstallNotSupportedError):
            await RecordingTrigger().install(update)


class TestTemplates:
    """Tests for default and custom templates."""

    def test_default_simple(self, make_container):
        container = validate(
            make_container(linkTemplate="https://example.com/${raw}", result={"tag": "2.0.0"})
        )
        trigger = RecordingTrigger()
        assert trigger.render_simple_title(container) == "New tag found for container app"
        assert trigger.render_simple_body(container) == (
            "Container app running with tag 1.2.0 can be updated to tag 2.0.0\n"
            "https://example.com/2.0.0"
        )

    def test_body_without_link(self, update):
        assert RecordingTrigger().render_simple_body(update) == (
            "Container app running with tag 1.2.0 can be updated to tag 2.0.0"
        )

    def test_batch(self, update, make_container):
        other = validate(make_container(id="c2", name="db", result={"tag": "1.3.0"}))
        trigger = RecordingTrigger()
        assert trigger.render_batch_title([update, other]) == "2 updates available"
        assert trigger.render_batch_body([update, other]) == (
            "- Container app running with tag 1.2.0 can be updated to tag 2.0.0\n"
            "- Container db running with tag 1.2.0 can be updated to tag 1.3.0"
        )

    def test_custom_placeholders_substitution_only(self, update):
        trigger = RecordingTrigger(
            configuration={"simpletitle": "${watcher}/${name} ${semver} ${unknown} {__import__('os')}"}
        )
        assert trigger.render_simple_title(update) == "local/app major ${unknown} {__import__('os')}"


class TestHttpTrigger:
    """Tests for the HTTP webhook trigger."""

    @pytest.mark.asyncio
    async def test_post(self, update):
        transport = RecordingTransport()
        trigger = HttpTrigger(
            "hook",
            {"url": "https://hooks.local/update", "auth": {"type": "bearer", "bearer": "token"}},
            client=transport.client(),
        )
        await trigger.trigger(update)

        request = transport.requests[0]
        body = json.loads(request.content)
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer token"
        assert body["actionType"] == "trigger"
        assert body["name"] == "app"
        assert body["updateKind"]["remoteValue"] == "2.0.0"

    @pytest.mark.asyncio
    async def test_get_with_basic_auth(self, update):
        transport = RecordingTransport()
        trigger = HttpTrigger(
            "hook",
            {"url": "http://hooks.local", "method": "get", "auth": {"user": "me", "password": "pw"}},
            client=transport.client(),
        )
        await trigger.trigger(update)

        request = transport.requests[0]
        assert request.method == "GET"
        assert request.url.params["name"] == "app"
        assert request.url.params["image.tag.value"] == "1.2.0"
        assert request.url.params["actionType"] == "trigger"
        assert request.headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_install_mode(self, update):
        transport = RecordingTransport()
        trigger = HttpTrigger("hook", {"url": "https://hooks.local", "install": True}, client=transport.client())

        await trigger.trigger(update)
        assert transport.requests == []

        await trigger.install(update)
        assert json.loads(transport.requests[0].content)["actionType"] == "install"

    @pytest.mark.asyncio
    async def test_error_status_raises(self, update):
        transport = RecordingTransport(httpx.Response(500))
        trigger = HttpTrigger("hook", {"url": "https://hooks.local"}, client=transport.client())
        with pytest.raises(httpx.HTTPStatusError):
            await trigger.trigger(update)

    def test_invalid_auth(self):
        with pytest.raises(ConfigurationError):
            HttpTrigger("hook", {"url": "https://hooks.local", "auth": {"type": "BASIC", "user": "me"}})

    def test_mask(self):
        trigger = HttpTrigger(
            "hook", {"url": "https://hooks.local", "auth": {"type": "BEARER", "bearer": "secret"}}
        )
        assert trigger.mask_configuration()["auth"]["bearer"] == "s****t"


class TestNotificationTriggers:
    """Tests for ntfy, gotify, discord and telegram payloads."""

    @pytest.mark.asyncio
    async def test_ntfy(self, update):
        transport = RecordingTransport()
        trigger = NtfyTrigger(
            "ops", {"topic": "updates", "priority": 4, "auth": {"token": "tk"}}, client=transport.client()
        )
        await trigger.trigger(update)

        request = transport.requests[0]
        assert request.url.host == "ntfy.sh"
        assert request.headers["Authorization"] == "Bearer tk"
        assert json.loads(request.content) == {
            "topic": "updates",
            "title": "New tag found for container app",
            "message": "Container app running with tag 1.2.0 can be updated to tag 2.0.0",
            "priority": 4,
        }

    def test_ntfy_priority_range(self):
        with pytest.raises(ConfigurationError):
            NtfyTrigger("ops", {"topic": "updates", "priority": 9})

    @pytest.mark.asyncio
    async def test_gotify(self, update):
        transport = RecordingTransport()
        trigger = GotifyTrigger("home", {"url": "https://gotify.local/", "token": "app"}, client=transport.client())
        await trigger.trigger(update)

        request = transport.requests[0]
        assert str(request.url) == "https://gotify.local/message"
        assert request.headers["X-Gotify-Key"] == "app"
        assert json.loads(request.content)["title"] == "New tag found for container app"

    @pytest.mark.asyncio
    async def test_discord(self, update):
        transport = RecordingTransport()
        trigger = DiscordTrigger(
            "team", {"url": "https://discord.com/api/webhooks/1"}, client=transport.client()
        )
        await trigger.trigger(update)

        body = json.loads(transport.requests[0].content)
        assert body["username"] == "Driftwatch"
        assert body["embeds"][0]["color"] == 65280
        assert body["embeds"][0]["fields"][0]["name"] == "Container"
        assert trigger.mask_configuration()["url"].startswith("h*")
        assert trigger.mask_configuration()["url"].endswith("1")

    @pytest.mark.asyncio
    async def test_telegram_markdown(self, update):
        transport = RecordingTransport()
        trigger = TelegramTrigger("bot", {"bottoken": "123:abc", "chatid": "42"}, client=transport.client())
        await trigger.trigger(update)

        request = transport.requests[0]
        body = json.loads(request.content)
        assert request.url.path == "/bot123:abc/sendMessage"
        assert body["parse_mode"] == "MarkdownV2"
        assert body["text"].startswith("*New tag found for container app*\n\n")
        assert "1\\.2\\.0" in body["text"]

    def test_telegram_html(self):
        trigger = TelegramTrigger("bot", {"bottoken": "t", "chatid": "1", "messageformat": "html"})
        assert trigger.format_message("A<B", "x & y") == "<b>A&lt;B</b>\n\nx &amp; y"
        trigger = TelegramTrigger(
            "bot", {"bottoken": "t", "chatid": "1", "messageformat": "html", "disabletitle": True}
        )
        assert trigger.format_message("title", "body") == "body"

    def test_escape_markdown(self):
        assert escape_markdown("a_b*c.d!") == "a\\_b\\*c\\.d\\!"

    @pytest.mark.asyncio
    async def test_telegram_api_error(self, update):
        transport = RecordingTransport(httpx.Response(200, json={"ok": False, "description": "bad"}))
        trigger = TelegramTrigger("bot", {"bottoken": "t", "chatid": "1"}, client=transport.client())
        with pytest.raises(RuntimeError, match="bad"):
            await trigger.trigger(update)


class TestCommandTrigger:
    """Tests for the command trigger."""

    @pytest.mark.asyncio
    async def test_environment(self, update):
        process = MagicMock()
        process.communicate = AsyncMock(return_value=(b"done", b""))
        process.returncode = 0

        with patch(
            "driftwatch.services.triggers.command.asyncio.create_subprocess_exec",
            new=AsyncMock(return_value=process),
        ) as create:
            trigger = CommandTrigger("notify", {"cmd": "echo $name"})
            await trigger.trigger(update)

        args, kwargs = create.call_args
        assert args == ("/bin/sh", "-c", "echo $name")
        env = kwargs["env"]
        assert env["name"] == "app"
        assert env["image_tag_value"] == "1.2.0"
        assert env["update_kind_remote_value"] == "2.0.0"
        assert json.loads(env["container_json"])["id"] == "c1"

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, update):
        process = MagicMock()
        process.communicate = AsyncMock(return_value=(b"", b"failed"))
        process.returncode = 2

        with patch(
            "driftwatch.services.triggers.command.asyncio.create_subprocess_exec",
            new=AsyncMock(return_value=process),
        ):
            trigger = CommandTrigger("notify", {"cmd": "false"})
            with pytest.raises(RuntimeError, match="code 2"):
                await trigger.trigger(update)


def write_script(tmp_path, body: str) -> str:
    script = tmp_path / "install.sh"
    script.write_text(f"#!/bin/sh\n{body}\n")
    script.chmod(0o755)
    return str(script)


class TestScriptTrigger:
    """Tests for install script execution."""

    def test_arguments(self, make_container):
        container = validate(
            make_container(labels={"com.docker.compose.project": "stack"}, result={"tag": "2.0.0"})
        )
        assert script_arguments(container) == ["app", "library/app", "1.2.0", "2.0.0", "local", "stack"]

    def test_batch_mode_rejected(self):
        with pytest.raises(ConfigurationError):
            ScriptTrigger("deploy", {"path": "/bin/true", "mode": "batch"})

    @pytest.mark.asyncio
    async def test_output_streamed(self, tmp_path, update):
        path = write_script(tmp_path, 'echo "update $1 to $4"\necho warn >&2')
        trigger = ScriptTrigger("deploy", {"path": path})
        lines = []

        exit_code = await trigger.run_script(update, lambda stream, line: lines.append((stream, line)))

        assert exit_code == 0
        assert ("stdout", "update app to 2.0.0") in lines
        assert ("stderr", "warn") in lines

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, tmp_path, update):
        trigger = ScriptTrigger("deploy", {"path": write_script(tmp_path, "exit 3")})
        with pytest.raises(ScriptExecutionError) as exc_info:
            await trigger.run_script(update, lambda stream, line: None)
        assert exc_info.value.exit_code == 3

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path, update):
        trigger = ScriptTrigger("deploy", {"path": write_script(tmp_path, "exec sleep 5"), "timeout": 100})
        with pytest.raises(ScriptTimeoutError):
            await trigger.run_script(update, lambda stream, line: None)

    @pytest.mark.asyncio
    async def test_missing_script(self, tmp_path, update):
        trigger = ScriptTrigger("deploy", {"path": str(tmp_path / "missing.sh")})
        with pytest.raises(ScriptExecutionError):
            await trigger.run_script(update, lambda stream, line: None)

    @pytest.mark.asyncio
    async def test_trigger_does_not_run_script(self, update):
        trigger = ScriptTrigger("deploy", {"path": "/bin/false"})
        with patch.object(trigger, "run_script", new_callable=AsyncMock) as run_script:
            await trigger.trigger(update)
            run_script.assert_not_awaited()
