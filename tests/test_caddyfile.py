import pytest

from zonelimit.caddyfile import CaddyfileError, parse_rate_limit, tokenize
from zonelimit.distributed import FileStorage, MemoryStorage
from zonelimit.handler import RateLimitExceeded
from zonelimit.ratelimit import Request, ZoneRegistry, any_match
from zonelimit.ringbuffer import set_clock

REFERENCE_TIME = 1_000_000.0
WINDOW = 60
MAX_EVENTS = 10

CONFIG = f"""
rate_limit {{
    zone zone1 {{
        match {{
            method GET
        }}
        key static
        window {WINDOW}s
        events {MAX_EVENTS}
    }}
}}
"""


@pytest.fixture
def clock():
    current = [REFERENCE_TIME]
    set_clock(lambda: current[0])
    yield current
    set_clock(None)


def _provisioned(text):
    handler = parse_rate_limit(text)
    handler.registry = ZoneRegistry()
    handler.provision(storage=MemoryStorage())
    return handler


@pytest.fixture
def handler(clock):
    provisioned = _provisioned(CONFIG)
    yield provisioned
    provisioned.cleanup()


def _ok(request):
    return 200


def test_tokenize_words_lines_and_quotes():
    tokens = tokenize('rate_limit {\n  key "a b" # comment\n}')
    assert [t.text for t in tokens] == ["rate_limit", "{", "key", "a b", "}"]
    assert [t.line for t in tokens] == [1, 1, 2, 2, 3]
    assert [t.quoted for t in tokens] == [False, False, False, True, False]


def test_tokenize_escaped_quote_and_backquote():
    tokens = tokenize('key "say \\"hi\\"" `raw \\n`')
    assert [t.text for t in tokens] == ["key", 'say "hi"', "raw \\n"]


def test_tokenize_unterminated_quote():
    with pytest.raises(CaddyfileError) as info:
        tokenize('key\n"open')
    assert info.value.line == 2


def test_parse_zone_fields():
    handler = parse_rate_limit(CONFIG)
    zone = handler.rate_limits["zone1"]
    assert zone.key == "static"
    assert zone.window == 60.0
    assert zone.max_events == 10
    assert len(zone.match) == 1
    assert zone.match[0].methods == ("GET",)


def test_rate_limits_through_caddyfile(handler, clock):
    for _ in range(MAX_EVENTS):
        assert handler.serve(Request(method="GET"), _ok) == 200

    with pytest.raises(RateLimitExceeded) as info:
        handler.serve(Request(method="GET"), _ok)
    assert info.value.retry_after == str(WINDOW)
    assert info.value.status_code == 429

    assert handler.serve(Request(method="POST"), _ok) == 200

    clock[0] = REFERENCE_TIME + WINDOW // 2
    with pytest.raises(RateLimitExceeded) as info:
        handler.serve(Request(method="GET"), _ok)
    assert info.value.retry_after == str(WINDOW // 2)

    clock[0] = REFERENCE_TIME + WINDOW + 1
    assert handler.serve(Request(method="GET"), _ok) == 200


def test_distinct_zones_and_keys(clock):
    text = """
    rate_limit {
        zone zone1 {
            match {
                method GET
            }
            key {http.request.orig_uri.path}
            window 60s
            events 2
        }
        zone zone2 {
            match {
                method DELETE
            }
            key {http.request.orig_uri.path}
            window 60s
            events 2
        }
    }
    """
    handler = _provisioned(text)
    try:
        for method in ("GET", "DELETE"):
            for path in ("/path1", "/path2"):
                for _ in range(2):
                    assert handler.serve(Request(method=method, path=path), _ok) == 200
                with pytest.raises(RateLimitExceeded) as info:
                    handler.serve(Request(method=method, path=path), _ok)
                assert info.value.key == path
    finally:
        handler.cleanup()


def test_quoted_brace_is_an_argument():
    handler = parse_rate_limit('rate_limit {\n zone z {\n key "{"\n window 1s\n events 1\n }\n}')
    assert handler.rate_limits["z"].key == "{"


def test_multiple_match_blocks():
    text = """
    rate_limit {
        zone z {
            match {
                method GET
            }
            match {
                path /api/*
                header X-Test yes
            }
            window 1m
            events 3
        }
    }
    """
    zone = parse_rate_limit(text).rate_limits["z"]
    assert len(zone.match) == 2
    assert any_match(zone.match, Request(method="GET", path="/"))
    assert any_match(
        zone.match, Request(method="POST", path="/api/x", headers={"X-Test": "yes"})
    )
    assert not any_match(zone.match, Request(method="POST", path="/api/x"))


def test_distributed_block():
    text = """
    rate_limit {
        distributed {
            read_interval 10s
            write_interval 2s
            purge_age 1h
        }
    }
    """
    distributed = parse_rate_limit(text).distributed
    assert distributed.read_interval == 10.0
    assert distributed.write_interval == 2.0
    assert distributed.purge_age == 3600.0


def test_other_options():
    text = """
    rate_limit {
        log_key
        jitter 0.2
        sweep_interval 30s
        storage memory
    }
    """
    handler = parse_rate_limit(text)
    assert handler.log_key is True
    assert handler.jitter == 0.2
    assert handler.sweep_interval == 30.0
    assert isinstance(handler.storage, MemoryStorage)


def test_file_system_storage_inline(tmp_path):
    handler = parse_rate_limit(f'rate_limit {{\n storage file_system "{tmp_path}"\n}}')
    assert isinstance(handler.storage, FileStorage)
    assert handler.storage.path == tmp_path


def test_file_system_storage_block(tmp_path):
    text = f'rate_limit {{\n storage file_system {{\n root "{tmp_path}"\n }}\n}}'
    assert parse_rate_limit(text).storage.path == tmp_path


def test_empty_configuration():
    assert parse_rate_limit("rate_limit").rate_limits == {}


@pytest.mark.parametrize(
    "body, message",
    [
        ("zone z {\n key a\n key b\n window 1s\n events 1\n}", "zone key already specified: a"),
        ("zone z {\n window 1s\n window 2s\n events 1\n}", "zone window already specified: 1s"),
        ("zone z {\n window 1s\n events 1\n events 2\n}", "zone max events already specified: 1"),
        ("zone z {\n window soon\n events 1\n}", "invalid window duration 'soon'"),
        ("zone z {\n window 1s\n events many\n}", "invalid max events integer 'many'"),
        ("zone z {\n key a\n events 1\n}", "requires both a window and maximum events"),
        ("zone z {\n key a\n window 1s\n}", "requires both a window and maximum events"),
        ("zone z {\n limit 5\n}", "unrecognized subdirective 'limit'"),
        ("zone z {\n match {\n cookie x\n }\n}", "unrecognized matcher 'cookie'"),
        ("bogus", "unrecognized subdirective 'bogus'"),
        ("log_key yes", "wrong argument count"),
        ("jitter", "wrong argument count"),
        ("jitter lots", "invalid jitter percentage 'lots'"),
        ("jitter 0.1\n jitter 0.2", "jitter already specified"),
        ("sweep_interval 1s\n sweep_interval 2s", "sweep interval already specified: 1s"),
        ("distributed {\n read_interval 1s\n read_interval 2s\n}", "read interval already specified"),
        ("distributed {\n purge_age never\n}", "invalid purge age 'never'"),
        ("distributed {\n speed 1\n}", "unrecognized subdirective 'speed'"),
        ("storage redis", "unknown storage module 'caddy.storage.redis'"),
        ("storage file_system", "file_system storage requires a root"),
        ("zone", "wrong argument count"),
    ],
)
def test_errors(body, message):
    with pytest.raises(CaddyfileError) as info:
        parse_rate_limit(f"rate_limit {{\n {body}\n}}")
    assert message in str(info.value)


def test_error_reports_line():
    text = "rate_limit {\n zone z {\n  key a\n  key b\n }\n}"
    with pytest.raises(CaddyfileError) as info:
        parse_rate_limit(text)
    assert info.value.line == 4


def test_rate_limit_takes_no_arguments():
    with pytest.raises(CaddyfileError) as info:
        parse_rate_limit("rate_limit extra {\n}")
    assert "wrong argument count" in str(info.value)


def test_other_top_level_directive_rejected():
    with pytest.raises(CaddyfileError) as info:
        parse_rate_limit("respond 200")
    assert "expected 'rate_limit'" in str(info.value)


def test_unclosed_block():
    with pytest.raises(CaddyfileError) as info:
        parse_rate_limit("rate_limit {\n zone z {\n key a\n}")
    assert info.value.line == 1


def test_stray_closing_brace():
    with pytest.raises(CaddyfileError) as info:
        parse_rate_limit("rate_limit\n}")
    assert info.value.line == 2


def test_negative_events_rejected_at_provision(clock):
    handler = parse_rate_limit("rate_limit {\n zone z {\n window 1s\n events -1\n }\n}")
    assert handler.rate_limits["z"].max_events == -1
    handler.registry = ZoneRegistry()
    with pytest.raises(ValueError, match="max_events must be at least zero"):
        handler.provision(storage=MemoryStorage())
    handler.cleanup()