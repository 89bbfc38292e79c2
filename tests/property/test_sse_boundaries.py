"""
Property-based tests for SSE decoding and retry delays.

Network chunking is arbitrary: however the byte stream is split, the
decoded tokens must be the same.
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from virtual_csuite.core.resilience import RetryPolicy, calculate_delay_ms
from virtual_csuite.core.sse import SSEDecoder

from tests.fakes import sse_body

tokens_strategy = st.lists(
    st.text(min_size=1, max_size=12),
    min_size=1,
    max_size=8,
)


def split_at(data: bytes, cuts):
    points = sorted({c % (len(data) + 1) for c in cuts})
    pieces, last = [], 0
    for point in points:
        pieces.append(data[last:point])
        last = point
    pieces.append(data[last:])
    return pieces


@settings(max_examples=200, deadline=None)
@given(tokens=tokens_strategy, cuts=st.lists(st.integers(min_value=0), max_size=10))
def test_split_points_do_not_change_tokens(tokens, cuts):
    body = sse_body(tokens)
    decoder = SSEDecoder()

    decoded = []
    for piece in split_at(body, cuts):
        decoded.extend(decoder.feed(piece))
    decoded.extend(decoder.flush())

    assert decoded == tokens
    assert decoder.skipped_frames == 0


@settings(max_examples=200, deadline=None)
@given(
    attempt=st.integers(min_value=1, max_value=30),
    jitter=st.floats(min_value=0, max_value=1, exclude_max=True),
    initial=st.floats(min_value=0, max_value=5000),
    maximum=st.floats(min_value=0, max_value=60000),
)
def test_delay_never_exceeds_cap(attempt, jitter, initial, maximum):
    policy = RetryPolicy(initial_delay_ms=initial, max_delay_ms=maximum)

    delay = calculate_delay_ms(attempt, policy, rng=lambda: jitter)

    assert 0 <= delay <= maximum
