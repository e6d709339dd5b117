import pytest

from conftest import sse

from apps.pipeline.errors import StreamMalformedFrame, StreamTransportError
from apps.pipeline.response_stream import ResponseStreamConsumer, parse_frame, split_sentences


async def aiter(chunks):
    for chunk in chunks:
        yield chunk


def make_consumer(segments, deltas=None):
    return ResponseStreamConsumer(
        sentinel="[SILENT]",
        on_segment=segments.append,
        on_delta=deltas.append if deltas is not None else None,
    )


async def test_two_chunks_split_mid_sentence_give_two_segments():
    segments = []
    consumer = make_consumer(segments)

    result = await consumer.consume(aiter([sse("Hello th", done=False), sse("ere. How are you?")]))

    assert segments == ["Hello there.", "How are you?"]
    assert result.full_text == "Hello there. How are you?"
    assert result.segment_count == 2
    assert result.done


async def test_sentence_is_emitted_before_stream_ends():
    segments = []
    consumer = make_consumer(segments)
    seen_mid_stream = []

    async def chunks():
        yield sse("The door is open. The", done=False)
        seen_mid_stream.extend(segments)
        yield sse(" hallway is clear.")

    await consumer.consume(chunks())

    assert seen_mid_stream == ["The door is open."]
    assert segments == ["The door is open.", "The hallway is clear."]


async def test_unterminated_tail_is_flushed_at_end():
    segments = []
    await make_consumer(segments).consume(aiter([sse("Careful. Step down ahead")]))

    assert segments == ["Careful.", "Step down ahead"]


async def test_segments_reconstruct_full_text():
    segments = []
    text = "One thing. Two things! Are there three? Maybe four"
    deltas = [text[i:i + 5] for i in range(0, len(text), 5)]

    result = await make_consumer(segments).consume(aiter([sse(*deltas)]))

    assert " ".join(segments) == result.full_text == text


async def test_silence_sentinel_produces_no_segments():
    segments = []
    result = await make_consumer(segments).consume(aiter([sse("[SIL", "ENT]")]))

    assert segments == []
    assert result.segment_count == 0
    assert result.reply == "[SILENT]"


async def test_frames_split_across_byte_chunks():
    segments = []
    raw = sse("Café open. ", "Bye.")
    cut = raw.index("é".encode("utf-8")) + 1  # inside the two-byte character
    parts = [raw[:cut], raw[cut:cut + 7], raw[cut + 7:]]

    result = await make_consumer(segments).consume(aiter(parts))

    assert segments == ["Café open.", "Bye."]
    assert result.full_text == "Café open. Bye."


async def test_malformed_and_foreign_frames_are_skipped():
    segments = []
    chunks = [
        b": keep-alive\n\n",
        b"data: {not json}\n\n",
        b'data: {"choices": []}\n\n',
        sse("Still here."),
    ]

    result = await make_consumer(segments).consume(aiter(chunks))

    assert segments == ["Still here."]
    assert result.done


async def test_delta_callback_sees_growing_text():
    segments, deltas = [], []
    await make_consumer(segments, deltas).consume(aiter([sse("Hi", " there.")]))

    assert deltas == ["Hi", "Hi there."]


async def test_transport_error_propagates():
    segments = []

    async def chunks():
        yield sse("First part. Sec", done=False)
        raise StreamTransportError("Relay stream broke")

    consumer = make_consumer(segments)
    with pytest.raises(StreamTransportError):
        await consumer.consume(chunks())
    assert segments == ["First part."]


def test_parse_frame():
    assert parse_frame('data: {"choices":[{"delta":{"content":"hey"}}]}') == "hey"
    assert parse_frame("data: [DONE]") is None
    assert parse_frame("event: ping") is None
    assert parse_frame('data: {"choices":[{"delta":{}}]}') is None
    with pytest.raises(StreamMalformedFrame):
        parse_frame("data: {oops")


def test_split_sentences_keeps_unterminated_remainder():
    assert split_sentences("A. B? C") == (["A.", "B?"], "C")
    assert split_sentences("No boundary yet.") == ([], "No boundary yet.")
