import pytest

from trafficreplay import proto

POST = b"POST /post HTTP/1.1\r\nContent-Length: 7\r\nHost: www.w3.org\r\n\r\na=1&b=2"


@pytest.mark.parametrize(
    "payload, name, expected",
    [
        (POST, b"Content-Length", b"7"),
        (b"POST /post HTTP/1.1\r\nContent-Length: 7 \r\nHost: www.w3.org\r\n\r\na=1&b=2",
         b"Content-Length", b"7"),
        (b"POST /post HTTP/1.1\r\nContent-Length:7\r\nHost: www.w3.org\r\n\r\na=1&b=2",
         b"Content-Length", b"7"),
        (b"GET /p HTTP/1.1\r\nCookie:\r\nHost: www.w3.org\r\n\r\n", b"Cookie", b""),
        (b"POST /post HTTP/1.1\r\ncontent-length: 7\r\nHost: www.w3.org\r\n\r\na=1&b=2",
         b"Content-Length", b"7"),
        (b"POST /post HTTP/1.1\r\ncontent-length: 7\r\nhost: www.w3.org\r\n\r\na=1&b=2",
         b"host", b"www.w3.org"),
    ],
)
def test_header(payload, name, expected):
    assert proto.get_header(payload, name) == expected


def test_header_not_found():
    payload = b"GET /p HTTP/1.1\r\nCookie:\r\nHost: www.w3.org\r\n\r\n"
    value, start, end, value_start, value_end = proto.find_header(payload, b"Not-Found")
    assert (value, start, end, value_start, value_end) == (b"", -1, -1, -1, -1)


def test_find_header_positions():
    value, start, end, value_start, value_end = proto.find_header(POST, b"Host")
    assert value == b"www.w3.org"
    assert POST[start:end + 1] == b"Host: www.w3.org\r\n"
    assert POST[value_start:value_end + 1] == b"www.w3.org"


def test_mime_headers_end_pos():
    head = b"POST /post HTTP/1.1\r\nContent-Length: 7\r\nHost: www.w3.org\r\n\r\n"
    end = proto.mime_headers_end_pos(POST)
    assert POST[:end] == head


def test_mime_headers_start_pos():
    start = proto.mime_headers_start_pos(POST)
    end = proto.mime_headers_end_pos(POST) - 4
    assert POST[start:end] == b"Content-Length: 7\r\nHost: www.w3.org"


def test_mime_positions_missing():
    assert proto.mime_headers_start_pos(b"no line end") == -1
    assert proto.mime_headers_end_pos(b"GET / HTTP/1.1\r\n") == -1


def test_set_header_updates_existing():
    after = b"POST /post HTTP/1.1\r\nContent-Length: 14\r\nHost: www.w3.org\r\n\r\na=1&b=2"
    assert proto.set_header(POST, b"Content-Length", b"14") == after


def test_set_header_adds_missing():
    after = (b"POST /post HTTP/1.1\r\nUser-Agent: Gor\r\nContent-Length: 7\r\n"
             b"Host: www.w3.org\r\n\r\na=1&b=2")
    assert proto.set_header(POST, b"User-Agent", b"Gor") == after


def test_set_header_invalid_request_unchanged():
    invalid = b"POST /post HTTP/1.1"
    assert proto.set_header(invalid, b"User-Agent", b"Gor") == b"POST /post HTTP/1.1"


def test_add_then_get_round_trip():
    updated = proto.add_header(POST, b"X-Test", b"yes")
    assert proto.get_header(updated, b"x-test") == b"yes"
    assert proto.body(updated) == b"a=1&b=2"


@pytest.mark.parametrize(
    "payload",
    [
        b"POST /post HTTP/1.1\r\nUser-Agent: Gor\r\nContent-Length: 7\r\nHost: www.w3.org\r\n\r\na=1&b=2",
        b"POST /post HTTP/1.1\r\nUser-Agent: Gor \r\nContent-Length: 7\r\nHost: www.w3.org\r\n\r\na=1&b=2",
    ],
)
def test_delete_header(payload):
    assert proto.delete_header(payload, b"User-Agent") == POST


def test_delete_missing_header_unchanged():
    assert proto.delete_header(POST, b"Cookie") == POST


EXPECTED_HEADERS = {
    "Content-Length": ["7"],
    "Host": ["www.w3.org"],
    "User-Agent": ["Chrome"],
}


def test_parse_headers_request():
    parts = [b"POST /post HTTP/1.1\r\nContent-Length: 7\r\nHost: www.w3.or", b"g\r\nUser-Ag",
             b"ent:Chrome\r\n\r\n", b"Fake-Header: asda"]
    assert proto.parse_headers(b"".join(parts)) == EXPECTED_HEADERS


def test_parse_headers_response_with_reason():
    payload = (b"HTTP/1.1 200 OK\r\nContent-Length: 7\r\nHost: www.w3.org\r\n"
               b"User-Agent:Chrome\r\n\r\nbody")
    assert proto.parse_headers(payload) == EXPECTED_HEADERS


def test_parse_headers_response_without_reason():
    payload = (b"HTTP/1.1 200\r\nContent-Length: 7\r\nHost: www.w3.org\r\n"
               b"User-Agent:Chrome\r\n\r\nbody")
    assert proto.parse_headers(payload) == EXPECTED_HEADERS


def test_fuzz_crashers():
    assert proto.parse_headers(b"\n:00\n") == {}


def test_parse_headers_complex_user_agent():
    parts = [b"POST /post HTTP/1.1\r\nContent-Length: 7\r\nHost: www.w3.or", b"g\r\nUser-Ag",
             b"ent:Mozilla/5.0 (Windows NT 6.1; WOW64; Trident/7.0; rv:11.0) like Gecko\r\n\r\n",
             b"Fake-Header: asda"]
    headers = proto.parse_headers(b"".join(parts))
    assert headers["User-Agent"][0] == (
        "Mozilla/5.0 (Windows NT 6.1; WOW64; Trident/7.0; rv:11.0) like Gecko"
    )


def test_parse_headers_with_origin():
    parts = [b"POST /post HTTP/1.1\r\nContent-Length: 7\r\nHost: www.w3.or",
             b"g\r\nReferrer: http://127.0.0.1:3000\r\nOrigi",
             b"n: https://www.example.com\r\nUser-Ag",
             b"ent:Mozilla/5.0 (Windows NT 6.1; WOW64; Trident/7.0; rv:11.0) like Gecko\r\n\r\n",
             b"in:https://www.example.com\r\n\r\n", b"Fake-Header: asda"]
    headers = proto.parse_headers(b"".join(parts))
    assert headers["Referrer"][0] == "http://127.0.0.1:3000"
    assert headers["Origin"][0] == "https://www.example.com"
    assert headers["User-Agent"][0] == (
        "Mozilla/5.0 (Windows NT 6.1; WOW64; Trident/7.0; rv:11.0) like Gecko"
    )


def test_get_headers_unterminated_is_none():
    assert proto.get_headers(b"Host: www.w3.org\r\n") is None


def test_get_headers_continuation_and_repeats():
    payload = b"x-a: 1\r\n  more\r\nX-A: 2\r\n\r\n"
    assert proto.get_headers(payload) == {"X-A": ["1 more", "2"]}


def test_get_headers_missing_colon_is_none():
    assert proto.get_headers(b"no colon here\r\n\r\n") is None


@pytest.mark.parametrize(
    "payload, expected",
    [
        (POST, b"/post"),
        (b"GET /get\r\n\r\nHost: www.w3.org\r\n\r\n", b""),
        (b"GET /get\n", b""),
        (b"GET /get", b""),
    ],
)
def test_path(payload, expected):
    assert proto.path(payload) == expected


@pytest.mark.parametrize(
    "payload, expected",
    [
        (b"HTTP/1.1 200 OK\r\n", b"200"),
        (b"HTTP/1.1 200\r\n", b"200"),
        (b"HTTP/1.1 404 Not Found\r\n", b"404"),
    ],
)
def test_status(payload, expected):
    assert proto.status(payload) == expected


def test_method():
    assert proto.method(POST) == b"POST"
    assert proto.method(b"nospace") == b""


def test_body():
    assert proto.body(POST) == b"a=1&b=2"
    assert proto.body(b"GET / HTTP/1.1\r\n\r\n") == b""


def test_set_path():
    after = b"POST /new_path HTTP/1.1\r\nContent-Length: 7\r\nHost: www.w3.org\r\n\r\na=1&b=2"
    assert proto.set_path(POST, b"/new_path") == after


def test_path_param():
    payload = (b"POST /post?param=test&user_id=1&d_type=1&type=2&d_type=3 HTTP/1.1\r\n"
               b"Content-Length: 7\r\nHost: www.w3.org\r\n\r\na=1&b=2")
    assert proto.path_param(payload, b"param")[0] == b"test"
    assert proto.path_param(payload, b"user_id")[0] == b"1"
    assert proto.path_param(payload, b"type")[0] == b"2"
    assert proto.path_param(payload, b"d_type")[0] == b"1"
    assert proto.path_param(payload, b"missing") == (b"", -1, -1)


@pytest.mark.parametrize(
    "before, name, value, after",
    [
        (b"/post?param=test&user_id=1", b"param", b"new", b"/post?param=new&user_id=1"),
        (b"/post?param=test&user_id=1", b"user_id", b"2", b"/post?param=test&user_id=2"),
        (b"/post", b"param", b"test", b"/post?param=test"),
        (b"/post?param=test", b"user_id", b"1", b"/post?param=test&user_id=1"),
    ],
)
def test_set_path_param(before, name, value, after):
    rest = b" HTTP/1.1\r\nContent-Length: 7\r\nHost: www.w3.org\r\n\r\na=1&b=2"
    payload = b"POST " + before + rest
    assert proto.set_path_param(payload, name, value) == b"POST " + after + rest


def test_set_host_http10_absolute_path():
    payload = b"POST http://example.com/post HTTP/1.0\r\nContent-Length: 7\r\nHost: www.w3.org\r\n\r\na=1&b=2"
    after = b"POST http://new.com/post HTTP/1.0\r\nContent-Length: 7\r\nHost: www.w3.org\r\n\r\na=1&b=2"
    assert proto.set_host(payload, b"http://new.com", b"new.com") == after


def test_set_host_header():
    payload = b"POST /post HTTP/1.0\r\nContent-Length: 7\r\nHost: example.com\r\n\r\na=1&b=2"
    after = b"POST /post HTTP/1.0\r\nContent-Length: 7\r\nHost: new.com\r\n\r\na=1&b=2"
    assert proto.set_host(payload, None, b"new.com") == after


def test_set_host_adds_header():
    payload = b"POST /post HTTP/1.0\r\nContent-Length: 7\r\n\r\na=1&b=2"
    after = b"POST /post HTTP/1.0\r\nHost: new.com\r\nContent-Length: 7\r\n\r\na=1&b=2"
    assert proto.set_host(payload, None, b"new.com") == after


@pytest.mark.parametrize(
    "payload, expected",
    [
        (b"HTTP", False),
        (b"", False),
        (b"HTTP/1.1 100 Continue", False),
        (b"HTTP/1.1 100 Continue\r\n", True),
        (b"HTTP/1.1  \r\n", False),
        (b"HTTP/4.0 100Continue\r\n", False),
        (b"HTTP/1.0 100Continue\r\n", False),
        (b"HTTP/1.0 10r Continue\r\n", False),
        (b"HTTP/1.1 200\r\n", True),
        (b"HTTP/1.1 200\r\nServer: Tengine\r\nContent-Length: 0\r\nConnection: close\r\n\r\n", True),
        (b"HTTP/1.1 299 Unknown\r\n", False),
    ],
)
def test_has_response_title(payload, expected):
    assert proto.has_response_title(payload) is expected


@pytest.mark.parametrize(
    "payload, expected",
    [
        (b"POST /post HTTP/1.0\r\n", True),
        (b"", False),
        (b"POST /post HTTP/1.\r\n", False),
        (b"POS /post HTTP/1.1\r\n", False),
        (b"GET / HTTP/1.1\r\n", True),
        (b"GET / HTTP/1.1\r", False),
        (b"GET / HTTP/1.400\r\n", False),
    ],
)
def test_has_request_title(payload, expected):
    assert proto.has_request_title(payload) is expected


def test_has_title():
    assert proto.has_title(b"GET / HTTP/1.1\r\n") is True
    assert proto.has_title(b"HTTP/1.1 200 OK\r\n") is True
    assert proto.has_title(b"garbage garbage garbage\r\n") is False


def test_check_chunked_complete():
    data = b"4\r\nWiki\r\n5\r\npedia\r\nE\r\n in\r\n\r\nchunks.\r\n0\r\n\r\n"
    assert proto.check_chunked(data) == (len(data), True)


def test_check_chunked_wrong_length():
    data = b"7\r\nMozia\r\n9\r\nDeveloper\r\n7\r\nNetwork\r\n0\r\n\r\n"
    assert proto.check_chunked(data)[0] == 0


@pytest.mark.parametrize(
    "data",
    [
        b"4\r\nWiki\r\n5\r\npedia\r\nE\r\n in\r\n\r\nchunks.\r\n0\r\n\r\nEXpires",
        b"4\r\nWiki\r\n5\r\npedia\r\nE\r\n in\r\n\r\nchunks.\r\n3\r\n0\r\n\r\n0\r\n\r\nEXpires",
        b"4\r\nWiki\r\n5\r\npedia\r\nE; name='quoted string'\r\n in\r\n\r\nchunks.\r\n3\r\n0\r\n\r\n0\r\n\r\nEXpires",
    ],
)
def test_check_chunked_with_trailers(data):
    assert proto.check_chunked(data)[0] == len(data) - 7


def test_has_full_payload_chunked_pieces():
    assert proto.has_full_payload(
        None,
        b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\n",
        b"Transfer-Encoding: chunked\r\n\r\n",
        b"7\r\nMozilla\r\n9\r\nDeveloper\r\n",
        b"7\r\nNetwork\r\n0\r\n\r\n",
    ) is True


CHUNKED_TRAILER = (b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\nTransfer-Encoding: chunked\r\n"
                   b"Trailer: Expires\r\n\r\n7\r\nMozilla\r\n9\r\nDeveloper\r\n7\r\nNetwork\r\n0\r\n\r\n")


@pytest.mark.parametrize(
    "payload, expected",
    [
        (CHUNKED_TRAILER + b"Expires: Wed, 21 Oct 2015 07:28:00 GMT\r\n\r\n", True),
        (CHUNKED_TRAILER + b"Expires: Wed, 21 Oct 2015 07:28:00", False),
        (b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\nContent-Length: 23\r\n\r\n"
         b"MozillaDeveloperNetwork", True),
        (b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\nContent-Length: 23\r\n\r\n"
         b"MozillaDeveloperNet", False),
        (b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\n\r\n", True),
    ],
)
def test_has_full_payload(payload, expected):
    assert proto.has_full_payload(None, payload) is expected


def test_has_full_payload_without_title_line():
    assert proto.has_full_payload(None, b"no line ending") is False


class _Holder:
    def __init__(self):
        self.protocol_state = None


def test_has_full_payload_keeps_state_between_calls():
    holder = _Holder()
    head = b"POST / HTTP/1.1\r\nContent-Type: text/plain\r\nContent-Length: 23\r\n\r\n"
    assert proto.has_full_payload(holder, head, b"MozillaDeveloper") is False
    assert holder.protocol_state is not None
    assert proto.has_full_payload(holder, head, b"MozillaDeveloper", b"Network") is True