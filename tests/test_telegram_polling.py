import json
from typing import Any

import anyio
import httpx
import pytest

from pollbot.telegram.api_models import Message
from pollbot.telegram.bot import Bot, BotStartupError
from pollbot.telegram.client_api import HttpBotClient, TelegramApiError
from pollbot.telegram.commands import CommandRegistry
from tests.telegram_fakes import (
    FakeBot,
    RecordingLog,
    ScriptedSource,
    make_update,
    network_error,
)


@pytest.mark.anyio
async def test_offset_advances_past_every_update() -> None:
    stop = anyio.Event()
    source = ScriptedSource(
        [
            [make_update(3), make_update(7)],
            [],
            [make_update(12, text=None)],
        ],
        stop=stop,
    )
    bot = Bot(FakeBot(), source=source, default_handler=None)

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert source.offsets == [0, 8, 8, 13]
    assert bot.offset == 13


@pytest.mark.anyio
async def test_consumed_update_is_never_requested_again() -> None:
    stop = anyio.Event()
    source = ScriptedSource([[make_update(5)], [make_update(6)]], stop=stop)
    bot = Bot(FakeBot(), source=source, default_handler=None)

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert source.offsets == [0, 6, 7]


@pytest.mark.anyio
async def test_offset_never_moves_backwards() -> None:
    stop = anyio.Event()
    source = ScriptedSource([[make_update(10)], [make_update(4)]], stop=stop)
    bot = Bot(FakeBot(), source=source, default_handler=None)

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert source.offsets == [0, 11, 11]
    assert bot.offset == 11


@pytest.mark.anyio
async def test_startup_failure_never_fetches() -> None:
    source = ScriptedSource([])
    client = FakeBot(me_error=TelegramApiError("getMe", "Unauthorized", 401))
    bot = Bot(client, source=source)

    with pytest.raises(BotStartupError) as excinfo:
        await bot.run()

    assert source.calls == 0
    assert "error verifying bot" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, TelegramApiError)
    assert bot.me is None


@pytest.mark.anyio
async def test_startup_records_identity() -> None:
    stop = anyio.Event()
    source = ScriptedSource([], stop=stop)
    bot = Bot(FakeBot(), source=source)

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert bot.me is not None
    assert bot.me.username == "pollbot"


@pytest.mark.anyio
async def test_fetch_errors_are_retried() -> None:
    stop = anyio.Event()
    source = ScriptedSource(
        [network_error(), TelegramApiError("getUpdates", "Conflict", 409), [make_update(1)]],
        stop=stop,
    )
    client = FakeBot()
    log = RecordingLog()
    bot = Bot(
        client, source=source, error_backoff_s=0, log=log, drain_timeout_s=None
    )

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert source.offsets == [0, 0, 0, 2]
    assert log.events().count("bot.get_updates.failed") == 2
    assert client.sent == [(1, "Received your message: hello")]


@pytest.mark.anyio
async def test_fetch_error_waits_for_backoff() -> None:
    stop = anyio.Event()
    source = ScriptedSource([network_error(), []], stop=stop)
    bot = Bot(FakeBot(), source=source, error_backoff_s=0.05)

    started = anyio.current_time()
    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert anyio.current_time() - started >= 0.05
    assert source.calls == 3


@pytest.mark.anyio
async def test_stop_wins_over_fetch_error() -> None:
    stop = anyio.Event()
    source = ScriptedSource([network_error()], on_fetch=lambda _: stop.set())
    log = RecordingLog()
    bot = Bot(FakeBot(), source=source, error_backoff_s=60, log=log)

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert source.calls == 1
    assert "bot.get_updates.failed" not in log.events()
    assert "bot.stopped" in log.events()


@pytest.mark.anyio
async def test_stop_before_first_fetch() -> None:
    stop = anyio.Event()
    stop.set()
    source = ScriptedSource([[make_update(1)]])
    bot = Bot(FakeBot(), source=source)

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert source.calls == 0


@pytest.mark.anyio
async def test_stop_interrupts_pending_long_poll() -> None:
    stop = anyio.Event()
    fetching = anyio.Event()
    source = ScriptedSource([], on_fetch=lambda _: fetching.set())
    bot = Bot(FakeBot(), source=source)

    async def stop_when_fetching() -> None:
        await fetching.wait()
        stop.set()

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(stop_when_fetching)
            await bot.run(stop=stop)

    assert source.calls == 1


@pytest.mark.anyio
async def test_handlers_do_not_block_polling() -> None:
    stop = anyio.Event()
    release = anyio.Event()
    order: list[str] = []
    registry = CommandRegistry()

    async def slow(bot: Bot, message: Message) -> None:
        _ = bot, message
        await release.wait()
        order.append("slow")

    async def fast(bot: Bot, message: Message) -> None:
        _ = bot, message
        order.append("fast")

    registry.register("slow", slow)
    registry.register("fast", fast)

    def on_fetch(offset: int) -> None:
        if offset == 3:
            release.set()

    source = ScriptedSource(
        [[make_update(1, "/slow")], [make_update(2, "/fast")]],
        stop=stop,
        on_fetch=on_fetch,
    )
    bot = Bot(FakeBot(), commands=registry, source=source, drain_timeout_s=None)

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert source.offsets == [0, 2, 3]
    assert order == ["fast", "slow"]


@pytest.mark.anyio
async def test_handler_errors_do_not_stop_polling() -> None:
    stop = anyio.Event()
    registry = CommandRegistry()

    async def broken(bot: Bot, message: Message) -> None:
        _ = bot, message
        raise RuntimeError("handler exploded")

    registry.register("broken", broken)
    client = FakeBot()
    log = RecordingLog()
    source = ScriptedSource(
        [[make_update(1, "/broken")], [make_update(2, "hi")]], stop=stop
    )
    bot = Bot(client, commands=registry, source=source, log=log, drain_timeout_s=None)

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert source.offsets == [0, 2, 3]
    assert "bot.handler.failed" in log.events()
    assert client.sent == [(2, "Received your message: hi")]


@pytest.mark.anyio
async def test_stop_cancels_in_flight_handlers_by_default() -> None:
    stop = anyio.Event()
    cancelled: list[bool] = []
    registry = CommandRegistry()

    async def hang(bot: Bot, message: Message) -> None:
        _ = bot, message
        try:
            await anyio.sleep_forever()
        finally:
            cancelled.append(True)

    registry.register("hang", hang)
    source = ScriptedSource([[make_update(1, "/hang")]], stop=stop)
    bot = Bot(FakeBot(), commands=registry, source=source)

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert cancelled == [True]


@pytest.mark.anyio
async def test_drain_timeout_lets_handlers_finish() -> None:
    stop = anyio.Event()
    done: list[int] = []
    registry = CommandRegistry()

    async def work(bot: Bot, message: Message) -> None:
        _ = bot
        await anyio.sleep(0.05)
        done.append(message.message_id)

    registry.register("work", work)
    source = ScriptedSource([[make_update(1, "/work")]], stop=stop)
    bot = Bot(FakeBot(), commands=registry, source=source, drain_timeout_s=5)

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert done == [10]


@pytest.mark.anyio
async def test_drain_timeout_bounds_the_wait() -> None:
    stop = anyio.Event()
    registry = CommandRegistry()

    async def hang(bot: Bot, message: Message) -> None:
        _ = bot, message
        await anyio.sleep_forever()

    registry.register("hang", hang)
    source = ScriptedSource([[make_update(1, "/hang")]], stop=stop)
    bot = Bot(FakeBot(), commands=registry, source=source, drain_timeout_s=0.05)

    with anyio.fail_after(5):
        await bot.run(stop=stop)


@pytest.mark.anyio
async def test_max_concurrent_handlers_limits_execution() -> None:
    stop = anyio.Event()
    registry = CommandRegistry()
    active = 0
    peak = 0
    finished = 0

    async def work(bot: Bot, message: Message) -> None:
        nonlocal active, peak, finished
        _ = bot, message
        active += 1
        peak = max(peak, active)
        await anyio.sleep(0.01)
        active -= 1
        finished += 1

    registry.register("work", work)
    source = ScriptedSource(
        [[make_update(1, "/work"), make_update(2, "/work"), make_update(3, "/work")]],
        stop=stop,
    )
    bot = Bot(
        FakeBot(),
        commands=registry,
        source=source,
        max_concurrent_handlers=1,
        drain_timeout_s=None,
    )

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert finished == 3
    assert peak == 1


@pytest.mark.anyio
async def test_undecodable_update_does_not_stall_polling() -> None:
    stop = anyio.Event()
    offsets: list[int | None] = []
    replies: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content) if request.content else {}
        if method == "getMe":
            return httpx.Response(
                200, json={"ok": True, "result": {"id": 1, "first_name": "Poll"}}
            )
        if method == "sendMessage":
            replies.append(body)
            return httpx.Response(
                200,
                json={
                    "ok": True,
                    "result": {"message_id": 1, "chat": {"id": body["chat_id"], "type": "private"}},
                },
            )
        offsets.append(body.get("offset"))
        if len(offsets) == 1:
            return httpx.Response(
                200,
                json={
                    "ok": True,
                    "result": [
                        {
                            "update_id": 5,
                            "message": {
                                "message_id": 50,
                                "chat": {"id": 11, "type": "private"},
                                "text": "hello",
                            },
                        },
                        {"update_id": 6, "message": {"message_id": 60, "chat": "broken"}},
                    ],
                },
            )
        stop.set()
        return httpx.Response(200, json={"ok": True, "result": []})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = HttpBotClient(
        "123:abc", api_base_url="https://tg.test/bot{token}/{method}", http_client=http_client
    )
    bot = Bot(client, error_backoff_s=0, drain_timeout_s=None)
    try:
        with anyio.fail_after(5):
            await bot.run(stop=stop)
    finally:
        await http_client.aclose()

    assert offsets == [0, 7]
    assert bot.offset == 7
    assert replies == [{"chat_id": 11, "text": "Received your message: hello"}]


@pytest.mark.anyio
async def test_unexpected_source_errors_are_retried() -> None:
    stop = anyio.Event()
    source = ScriptedSource([RuntimeError("source broke"), [make_update(2)]], stop=stop)
    log = RecordingLog()
    bot = Bot(FakeBot(), source=source, error_backoff_s=0, log=log, default_handler=None)

    with anyio.fail_after(5):
        await bot.run(stop=stop)

    assert source.offsets == [0, 0, 3]
    failures = [fields for _, event, fields in log.records if event == "bot.get_updates.failed"]
    assert len(failures) == 1
    assert failures[0]["error_type"] == "RuntimeError"
    assert isinstance(failures[0]["exc_info"], RuntimeError)
