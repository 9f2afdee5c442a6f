import pytest

from zonelimit.ringbuffer import RingBufferRateLimiter, now, set_clock

REFERENCE_TIME = 1_000_000


@pytest.fixture
def clock():
    offset = {"seconds": 0}
    set_clock(lambda: REFERENCE_TIME + offset["seconds"])

    def advance(seconds):
        offset["seconds"] = seconds

    yield advance
    set_clock(None)


def test_count(clock):
    buf_size = 10
    rb = RingBufferRateLimiter(buf_size, buf_size)
    start_time = now()

    count, oldest = rb.count(now())
    assert count == 0
    assert oldest is None

    for i in range(buf_size):
        clock(i)
        assert rb.when() == 0
        count, oldest = rb.count(now())
        assert count == i + 1
        assert oldest == start_time

    assert rb.when() == 1.0

    count, oldest = rb.count(now())
    assert count == buf_size
    assert oldest == start_time

    clock(buf_size + buf_size // 2)
    count, oldest = rb.count(now())
    assert count == buf_size // 2
    assert oldest == start_time + buf_size // 2

    clock(2 * buf_size)
    count, oldest = rb.count(now())
    assert count == 0
    assert oldest is None


def test_now_uses_clock(clock):
    clock(5)
    assert now() == REFERENCE_TIME + 5


def test_negative_arguments_rejected():
    with pytest.raises(ValueError):
        RingBufferRateLimiter(-1, 10)
    with pytest.raises(ValueError):
        RingBufferRateLimiter(1, -10)
    rb = RingBufferRateLimiter(1, 10)
    with pytest.raises(ValueError):
        rb.update(-1, 10)
    with pytest.raises(ValueError):
        rb.update(1, -10)


def test_zero_events_never_allowed(clock):
    rb = RingBufferRateLimiter(0, 60)
    assert rb.when() > 0
    assert rb.max_events() == 0
    assert rb.count(now()) == (0, None)
    assert rb.newest_event() is None


def test_limit_reached_then_released(clock):
    rb = RingBufferRateLimiter(3, 60)
    assert [rb.when() for _ in range(3)] == [0, 0, 0]
    assert rb.when() == 60
    clock(30)
    assert rb.when() == 30
    clock(61)
    assert rb.when() == 0


def test_newest_event(clock):
    rb = RingBufferRateLimiter(4, 60)
    assert rb.newest_event() is None
    rb.when()
    clock(7)
    rb.when()
    assert rb.newest_event() == REFERENCE_TIME + 7


def test_reserve_under_lock(clock):
    rb = RingBufferRateLimiter(2, 60)
    with rb.lock:
        rb.reserve()
        count, oldest = rb.count_unsynced(now())
    assert count == 1
    assert oldest == REFERENCE_TIME


def test_update_shrink_keeps_newest(clock):
    rb = RingBufferRateLimiter(10, 100)
    for i in range(10):
        clock(i)
        rb.when()
    rb.update(5, 100)
    assert rb.max_events() == 5
    count, oldest = rb.count(now())
    assert count == 5
    assert oldest == REFERENCE_TIME + 5
    assert rb.newest_event() == REFERENCE_TIME + 9


def test_update_window(clock):
    rb = RingBufferRateLimiter(3, 100)
    rb.update(3, 20)
    assert rb.window() == 20
    assert rb.max_events() == 3