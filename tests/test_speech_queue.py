import asyncio

from conftest import FakeSynthesizer, wait_for

from apps.pipeline.speech_queue import SpeechOutputQueue


def make_queue(synth):
    drained = []
    queue = SpeechOutputQueue(synth, on_drained=lambda: drained.append(queue.pending))
    return queue, drained


async def test_segments_are_spoken_in_order_and_drain_once():
    synth = FakeSynthesizer(delay=0.005)
    queue, drained = make_queue(synth)

    for segment in ("One.", "Two.", "Three."):
        queue.enqueue(segment)
    assert queue.pending == 3
    assert queue.speaking

    await wait_for(lambda: drained)

    assert synth.finished == ["One.", "Two.", "Three."]
    assert drained == [0]
    assert queue.pending == 0
    assert not queue.speaking


async def test_pending_is_zero_exactly_when_not_speaking():
    synth = FakeSynthesizer(delay=0.005)
    queue, drained = make_queue(synth)
    samples = []

    queue.enqueue("A.")
    queue.enqueue("B.")
    while not drained:
        samples.append((queue.pending, queue.speaking))
        await asyncio.sleep(0.001)
    samples.append((queue.pending, queue.speaking))

    for pending, speaking in samples:
        assert pending >= 0
        assert (pending == 0) == (not speaking)


async def test_synthesis_error_counts_as_completion():
    synth = FakeSynthesizer(fail_on={"Broken."})
    queue, drained = make_queue(synth)

    queue.enqueue("Fine.")
    queue.enqueue("Broken.")
    queue.enqueue("Also fine.")
    await wait_for(lambda: drained)

    assert synth.spoken == ["Fine.", "Broken.", "Also fine."]
    assert synth.finished == ["Fine.", "Also fine."]
    assert queue.pending == 0


async def test_flush_all_cancels_everything_at_once():
    synth = FakeSynthesizer(delay=10.0)
    queue, drained = make_queue(synth)

    for segment in ("First.", "Second.", "Third."):
        queue.enqueue(segment)
    await wait_for(lambda: synth.spoken)

    queue.flush_all()

    assert queue.pending == 0
    assert not queue.speaking
    assert synth.cancelled == 1
    await asyncio.sleep(0.02)
    assert synth.spoken == ["First."]
    assert synth.finished == []
    assert drained == []


async def test_flush_on_empty_queue_is_safe_and_queue_is_reusable():
    synth = FakeSynthesizer()
    queue, drained = make_queue(synth)

    queue.flush_all()
    queue.flush_all()
    assert queue.pending == 0

    queue.enqueue("Again.")
    await wait_for(lambda: drained)
    assert synth.finished == ["Again."]
