import asyncio

import pytest

from termchat.client.consumer import (
    ConsumerState,
    DisplayMessage,
    LineKind,
    StreamConsumer,
    classify_line,
)


async def _chunks(*chunks):
    for chunk in chunks:
        yield chunk


def _consumer(on_update=None, **kwargs):
    message = DisplayMessage(role="assistant", is_typing=True)
    kwargs.setdefault("tick_interval", 0)
    return StreamConsumer(message, on_update=on_update, **kwargs)


def test_classify_line():
    assert classify_line("") == (LineKind.SKIP, "")
    assert classify_line(": ping") == (LineKind.SKIP, "")
    assert classify_line("data: [DONE]") == (LineKind.DONE, "")
    assert classify_line('data: {"choices":[{"delta":{"content":"x"}}]}') == (LineKind.CONTENT, "x")
    assert classify_line('data: {"choices":[{"delta":{"role":"assistant"}}]}') == (LineKind.SKIP, "")
    assert classify_line("data: {oops") == (LineKind.SKIP, "")
    assert classify_line('data: {"error": "boom"}') == (LineKind.ERROR, "boom")
    assert classify_line('data: {"error": {"message": "nested"}}') == (LineKind.ERROR, "nested")
    assert classify_line("plain words") == (LineKind.CONTENT, "plain words\n")
    assert classify_line("{not json either") == (LineKind.CONTENT, "{not json either\n")


@pytest.mark.asyncio
async def test_record_split_mid_line():
    consumer = _consumer()
    state = await consumer.run(
        _chunks(b'data: {"choices":[{"del', b'ta":{"content":"Hi"}}]}\n\ndata: [DONE]\n\n')
    )

    assert state is ConsumerState.RENDERED
    assert consumer.message.content == "Hi"
    assert consumer.message.is_typing is False


@pytest.mark.asyncio
async def test_malformed_record_between_good_ones_is_skipped():
    consumer = _consumer()
    await consumer.run(
        _chunks(
            b'data: {"choices":[{"delta":{"content":"A"}}]}\n\n',
            b"data: {broken\n\n",
            b'data: {"choices":[{"delta":{"content":"B"}}]}\n\n',
            b"data: [DONE]\n\n",
        )
    )
    assert consumer.message.content == "AB"


@pytest.mark.asyncio
async def test_plain_text_and_bare_json_lines():
    consumer = _consumer()
    await consumer.run(_chunks(b"hello\n", b'{"content": "x"}\n', b"world"))
    assert consumer.message.content == "hello\nxworld\n"


@pytest.mark.asyncio
async def test_empty_stream_renders_empty_message():
    updates = []
    consumer = _consumer(on_update=lambda m: updates.append(m.is_typing))

    state = await consumer.run(_chunks())

    assert state is ConsumerState.RENDERED
    assert consumer.message.content == ""
    assert updates == [False]


@pytest.mark.asyncio
async def test_error_record_fails_the_turn():
    consumer = _consumer()
    state = await consumer.run(
        _chunks(
            b'data: {"choices":[{"delta":{"content":"par"}}]}\n\n',
            b'data: {"error": "Stream error occurred"}\n\n',
        )
    )

    assert state is ConsumerState.FAILED
    assert consumer.error == "Stream error occurred"
    assert consumer.message.is_typing is False


@pytest.mark.asyncio
async def test_read_failure_fails_the_turn():
    async def broken():
        yield b'data: {"choices":[{"delta":{"content":"x"}}]}\n\n'
        raise ConnectionResetError("reset by peer")

    consumer = _consumer()
    assert await consumer.run(broken()) is ConsumerState.FAILED
    assert consumer.error == "reset by peer"


@pytest.mark.asyncio
async def test_typing_reveals_fixed_chunks():
    seen = []
    consumer = _consumer(on_update=lambda m: seen.append((len(m.content), m.is_typing)))
    text = "a" * 25

    await consumer.run(_chunks(f'data: {{"content": "{text}"}}\n\n'.encode()))

    assert seen == [(10, True), (20, True), (25, True), (25, False)]
    assert consumer.message.content == text


@pytest.mark.asyncio
async def test_abort_while_streaming():
    reached = asyncio.Event()
    gate = asyncio.Event()

    async def slow():
        reached.set()
        yield b'data: {"choices":[{"delta":{"content":"partial"}}]}\n\n'
        await gate.wait()
        yield b"data: [DONE]\n\n"

    consumer = _consumer()
    task = asyncio.create_task(consumer.run(slow()))
    await reached.wait()
    await asyncio.sleep(0)

    assert consumer.state is ConsumerState.STREAMING
    assert consumer.abort() is True
    assert await task is ConsumerState.ABORTED
    assert consumer.message.is_typing is False
    assert consumer.message.content == ""
    assert consumer.abort() is False


@pytest.mark.asyncio
async def test_abort_while_typing_freezes_content():
    consumer = None

    def on_update(message):
        if consumer.state is ConsumerState.TYPING and len(message.content) >= 10:
            consumer.abort()

    consumer = _consumer(on_update=on_update)
    state = await consumer.run(_chunks(b'data: {"content": "0123456789abcdefghij"}\n\n'))

    assert state is ConsumerState.ABORTED
    assert consumer.message.content == "0123456789"
    assert consumer.message.is_typing is False


@pytest.mark.asyncio
async def test_abort_after_render_is_a_no_op():
    consumer = _consumer()
    await consumer.run(_chunks(b'data: {"content": "done"}\n\n'))
    assert consumer.abort() is False
    assert consumer.state is ConsumerState.RENDERED


@pytest.mark.asyncio
async def test_complete_text_is_revealed_in_ticks():
    seen = []
    consumer = _consumer(on_update=lambda m: seen.append(len(m.content)))

    state = await consumer.run_text("b" * 15)

    assert state is ConsumerState.RENDERED
    assert seen == [10, 15, 15]
    assert consumer.message.content == "b" * 15
    assert consumer.message.is_typing is False
