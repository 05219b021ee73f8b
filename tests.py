import trio, random, socket, time, base64
import trio.testing, pytest, httpx
from functools import wraps
from hypothesis import given, settings, assume
from hypothesis.strategies import data, integers, binary, lists, builds, tuples, sampled_from, randoms, text

from typing import Callable, Dict, List, Optional, Tuple

from tokenproxy._tunnel import splice


TOKEN = "s3cret-token"


@settings(deadline=None)
@given(integers(1, 100), data(), randoms())
async def test_splice(num_iterations: int, data, rand: random.Random):
    client, near = trio.testing.memory_stream_pair()
    far, server = trio.testing.memory_stream_pair()

    async def spliceit(near, far):
        await splice(near, far)

    async def testit(a, b):
        for i in range(num_iterations):
            a, b = rand.sample((a, b), k=2)

            to_send = data.draw(binary(min_size=1))  # we must send something or receive_some will block
            await a.send_all(to_send)
            received = await b.receive_some(len(to_send))

            assert to_send == received

        a, b = rand.sample((a, b), k=2)
        await a.aclose()  # kill one end, the rest should take care of itself


    async with trio.open_nursery() as nursery:
        nursery.start_soon(spliceit, near, far)
        nursery.start_soon(testit, client, server)


async def test_splice_counts_bytes_in_each_direction():
    client, near = trio.testing.memory_stream_pair()
    far, server = trio.testing.memory_stream_pair()
    tally = [0, 0]

    async def testit():
        await client.send_all(b"x" * 1000)
        assert await server.receive_some(1000) == b"x" * 1000
        await server.send_all(b"y" * 10)
        assert await client.receive_some(10) == b"y" * 10
        await server.aclose()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(splice, near, far, tally)
        nursery.start_soon(testit)

    assert tally == [1000, 10]


################################################################
#                  Authentication
################################################################

from tokenproxy._auth import AuthGate, AuthResult, authenticate, extract_bearer, extract_proxy_basic
from tokenproxy._config import AuthScheme


@given(binary(), binary(min_size=1))
def test_authenticate_rejects_every_other_token(presented: bytes, configured: bytes) -> None:
    assume(presented != configured)
    assert authenticate(presented, configured) is AuthResult.UNAUTHORIZED


@given(binary(min_size=1))
def test_authenticate_accepts_the_token(configured: bytes) -> None:
    assert authenticate(bytes(configured), configured) is AuthResult.AUTHORIZED


def test_authenticate_rejects_absent_token() -> None:
    assert authenticate(None, b"anything") is AuthResult.UNAUTHORIZED


def test_authenticate_time_does_not_depend_on_mismatch_position() -> None:
    configured = b"a" * 65536
    early = b"b" + configured[1:]
    late = configured[:-1] + b"b"

    def median_time(candidate: bytes) -> float:
        samples = []
        for _ in range(301):
            start = time.perf_counter()
            authenticate(candidate, configured)
            samples.append(time.perf_counter() - start)
        return sorted(samples)[len(samples) // 2]

    median_time(early)  # warm up
    ratio = median_time(early) / median_time(late)
    assert 0.33 < ratio < 3.0


def basic(user: str, token: str) -> bytes:
    return b"Basic " + base64.b64encode(f"{user}:{token}".encode())


@pytest.mark.parametrize("headers, expected", [
    ([(b"Authorization", b"Bearer abc")], b"abc"),
    ([(b"authorization", b"bearer   abc  ")], b"abc"),
    ([(b"Authorization", b"Basic abc")], None),
    ([(b"Authorization", b"Bearer")], None),
    ([], None),
])
def test_extract_bearer(headers, expected) -> None:
    assert extract_bearer(headers) == expected


@pytest.mark.parametrize("headers, expected", [
    ([(b"Proxy-Authorization", basic("proxy", "abc"))], b"abc"),
    ([(b"Proxy-Authorization", basic("proxy", "a:b"))], b"a:b"),
    ([(b"Proxy-Authorization", basic("someone", "abc"))], None),
    ([(b"Proxy-Authorization", b"Basic !!!notbase64")], None),
    ([(b"Proxy-Authorization", b"Bearer abc")], None),
    ([(b"Authorization", basic("proxy", "abc"))], None),
])
def test_extract_proxy_basic(headers, expected) -> None:
    assert extract_proxy_basic(headers) == expected


def test_gate_only_accepts_the_configured_scheme() -> None:
    bearer = AuthGate(TOKEN, AuthScheme.BEARER)
    proxy_basic = AuthGate(TOKEN, AuthScheme.PROXY_BASIC)
    as_bearer = [(b"Authorization", f"Bearer {TOKEN}".encode())]
    as_basic = [(b"Proxy-Authorization", basic("proxy", TOKEN))]

    assert bearer.check(as_bearer) is AuthResult.AUTHORIZED
    assert bearer.check(as_basic) is AuthResult.UNAUTHORIZED
    assert proxy_basic.check(as_basic) is AuthResult.AUTHORIZED
    assert proxy_basic.check(as_bearer) is AuthResult.UNAUTHORIZED


def test_gate_never_logs_the_token(caplog) -> None:
    gate = AuthGate(TOKEN)
    with caplog.at_level("DEBUG", logger="tokenproxy"):
        gate.check([(b"Authorization", f"Bearer {TOKEN}".encode())], "10.0.0.1:1234")
        gate.check([(b"Authorization", b"Bearer wrong-guess")], "10.0.0.2:1234")
    assert "10.0.0.2" in caplog.text
    assert TOKEN not in caplog.text
    assert "wrong-guess" not in caplog.text


################################################################
#                  Header sanitizing
################################################################

from tokenproxy._headers import HOP_BY_HOP, Direction, sanitize

UA = b"TestAgent/1.0"

header_names = sampled_from([
    b"Connection", b"Keep-Alive", b"Proxy-Authenticate", b"Proxy-Authorization",
    b"TE", b"Trailer", b"Transfer-Encoding", b"Upgrade", b"User-Agent",
    b"Content-Type", b"Accept", b"X-Custom", b"x-other", b"Cookie",
])
header_values = sampled_from([b"", b"close", b"x-custom", b"X-Custom, x-other", b"text/html", b"gzip"])
header_lists = lists(tuples(header_names, header_values), max_size=12)


@given(header_lists, sampled_from(list(Direction)))
def test_sanitize_is_idempotent(headers, direction) -> None:
    once = sanitize(headers, direction, UA)
    assert sanitize(once, direction, UA) == once


@given(header_lists, sampled_from(list(Direction)))
def test_sanitize_removes_hop_by_hop_headers(headers, direction) -> None:
    named_in_connection = set()
    for name, value in headers:
        if name.lower() == b"connection":
            named_in_connection.update(v.strip().lower() for v in value.split(b","))

    result = sanitize(headers, direction, UA)

    for name, _ in result:
        assert name.lower() not in HOP_BY_HOP
        assert name.lower() not in named_in_connection


@given(header_lists)
def test_sanitize_overrides_user_agent_going_out(headers) -> None:
    result = sanitize(headers, Direction.OUTBOUND_REQUEST, UA)
    assert [v for n, v in result if n.lower() == b"user-agent"] == [UA]


def test_sanitize_keeps_user_agent_coming_back() -> None:
    headers = [(b"User-Agent", b"upstream"), (b"Content-Type", b"text/plain")]
    assert sanitize(headers, Direction.INBOUND_RESPONSE, UA) == headers


def test_sanitize_keeps_order() -> None:
    headers = [(b"A", b"1"), (b"Connection", b"b"), (b"B", b"2"), (b"C", b"3"), (b"D", b"4")]
    assert sanitize(headers, Direction.INBOUND_RESPONSE) == [(b"A", b"1"), (b"C", b"3"), (b"D", b"4")]


################################################################
#                  Configuration
################################################################

from tokenproxy._config import ProxyConfig, TargetMode, load_configuration, DEFAULT_BODY_LIMIT
from tokenproxy._errors import ConfigurationError


def test_configuration_defaults() -> None:
    config = load_configuration([], {"AUTH_TOKEN": TOKEN})
    assert config.listen_port == 7788
    assert config.listen_host == "0.0.0.0"
    assert config.body_limit == DEFAULT_BODY_LIMIT == 2 * 1024 * 1024
    assert config.shutdown_grace == 30.0
    assert config.auth_scheme is AuthScheme.BEARER
    assert config.target_mode is TargetMode.PARAM
    assert config.allow_connect


def test_configuration_requires_a_token() -> None:
    with pytest.raises(ConfigurationError):
        load_configuration([], {})
    with pytest.raises(ConfigurationError):
        load_configuration([], {"AUTH_TOKEN": ""})


def test_configuration_arguments_override_environment() -> None:
    environ = {"AUTH_TOKEN": TOKEN, "PORT": "1234", "USER_AGENT": "from-env", "TARGET_MODE": "uri"}
    config = load_configuration(["--port", "4321", "-u", "from-cli", "--no-connect"], environ)
    assert config.listen_port == 4321
    assert config.user_agent == "from-cli"
    assert config.target_mode is TargetMode.URI
    assert not config.allow_connect


@pytest.mark.parametrize("environ", [
    {"PORT": "70000"},
    {"PORT": "http"},
    {"AUTH_SCHEME": "digest"},
    {"REDIRECT_LIMIT": "-1"},
    {"BODY_LIMIT": "lots"},
    {"ALLOW_CONNECT": "maybe"},
])
def test_configuration_rejects_bad_values(environ: Dict[str, str]) -> None:
    with pytest.raises(ConfigurationError):
        load_configuration([], {"AUTH_TOKEN": TOKEN, **environ})


def test_configuration_does_not_show_the_token() -> None:
    assert TOKEN not in repr(ProxyConfig(auth_token=TOKEN))


def test_configuration_reads_dotenv_file(tmp_path, monkeypatch) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("AUTH_TOKEN=from-file\nPORT=1111\nUSER_AGENT=file-agent\n")
    # Set then delete, so that monkeypatch restores whatever was there.
    for name in ("AUTH_TOKEN", "USER_AGENT"):
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)
    monkeypatch.setenv("PORT", "9000")

    config = load_configuration([], env_file=str(env_file))
    assert config.auth_token == "from-file"
    assert config.user_agent == "file-agent"
    assert config.listen_port == 9000  # already set, so the file loses


def test_configuration_explicit_environment_skips_dotenv(tmp_path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("PORT=1111\n")
    config = load_configuration([], {"AUTH_TOKEN": TOKEN}, env_file=str(env_file))
    assert config.listen_port == 7788


################################################################
#                  Plain forwarding
################################################################

from tokenproxy._errors import BadTarget, NotFound, UpstreamBodyTooLarge, UpstreamUnreachable
from tokenproxy._forward import InboundRequest, PlainForwarder, make_client, resolve_target
from tokenproxy._proxy import TokenProxy, handle
from tokenproxy.adapter import TrioHTTPConnection


def reply(status: int = 200, body: bytes = b"", headers: Optional[Dict[str, str]] = None) -> httpx.Response:
    """An upstream response whose body is still unread, as one off the wire would be."""
    headers = dict(headers or {})
    if body:
        headers.setdefault("Content-Length", str(len(body)))
    return httpx.Response(status, headers=headers, stream=httpx.ByteStream(body))


class Upstream:
    """A fake upstream server, for httpx.MockTransport."""

    def __init__(self, respond: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.requests: List[httpx.Request] = []
        self.respond = respond or (lambda request: reply(200, b"hello"))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


def make_forwarder(upstream: Upstream, **overrides) -> PlainForwarder:
    config = ProxyConfig(auth_token=TOKEN, user_agent=UA.decode(), **overrides)
    client = make_client(config, transport=httpx.MockTransport(upstream))
    return PlainForwarder(config, client)


def get(url: str, headers: Optional[List[Tuple[bytes, bytes]]] = None, method: bytes = b"GET") -> InboundRequest:
    target = b"/?url=" + url.encode()
    return InboundRequest(method=method, target=target, headers=headers or [])


@pytest.mark.parametrize("target, url", [
    (b"/?url=http://example.com/", "http://example.com/"),
    (b"/?url=https%3A%2F%2Fexample.com%2Fa%3Fb%3Dc", "https://example.com/a?b=c"),
    (b"?url=http://example.com:8080/x", "http://example.com:8080/x"),
])
def test_resolve_target_from_parameter(target: bytes, url: str) -> None:
    assert resolve_target(InboundRequest(b"GET", target), TargetMode.PARAM) == url


@pytest.mark.parametrize("target, error", [
    (b"/", BadTarget),
    (b"/?url=", BadTarget),
    (b"/?url=ftp://example.com/", BadTarget),
    (b"/?url=example.com", BadTarget),
    (b"/?url=http://example.com:99999/", BadTarget),
    (b"/other?url=http://example.com/", NotFound),
    (b"http://example.com/", NotFound),
])
def test_resolve_target_from_parameter_failures(target: bytes, error) -> None:
    with pytest.raises(error):
        resolve_target(InboundRequest(b"GET", target), TargetMode.PARAM)


def test_resolve_target_from_uri() -> None:
    assert resolve_target(InboundRequest(b"GET", b"http://example.com/a?b"), TargetMode.URI) == "http://example.com/a?b"
    with pytest.raises(NotFound):
        resolve_target(InboundRequest(b"GET", b"/a"), TargetMode.URI)
    with pytest.raises(BadTarget):
        resolve_target(InboundRequest(b"GET", b"gopher://example.com/"), TargetMode.URI)


@settings(deadline=None)
@given(status=sampled_from([200, 201, 202, 203, 204, 206, 400, 403, 404, 418, 429, 500, 503]))
async def test_forward_copies_status(status: int) -> None:
    forwarder = make_forwarder(Upstream(lambda request: reply(status)))
    response = await forwarder.forward(get("http://upstream.test/"))
    assert response.status_code == status


async def test_forward_204_without_body() -> None:
    forwarder = make_forwarder(Upstream(lambda request: reply(204)))
    response = await forwarder.forward(get("http://upstream.test/"))
    assert response.status_code == 204
    assert response.body == b""


async def test_forward_rewrites_outbound_headers() -> None:
    upstream = Upstream()
    forwarder = make_forwarder(upstream)
    headers = [
        (b"Authorization", f"Bearer {TOKEN}".encode()),
        (b"User-Agent", b"curl/8.0"),
        (b"Connection", b"keep-alive, X-Hop"),
        (b"X-Hop", b"1"),
        (b"Keep-Alive", b"timeout=5"),
        (b"X-Custom", b"kept"),
    ]
    await forwarder.forward(get("http://upstream.test/path", headers))

    [sent] = upstream.requests
    assert sent.url == "http://upstream.test/path"
    assert sent.headers.get_list("user-agent") == [UA.decode()]
    assert sent.headers["x-custom"] == "kept"
    for name in ("authorization", "x-hop", "keep-alive"):
        assert name not in sent.headers
    assert "gzip" not in sent.headers.get("accept-encoding", "")


async def test_forward_copies_content_type_but_invents_nothing() -> None:
    typed = make_forwarder(Upstream(lambda request: reply(200, b"{}", {"Content-Type": "application/json"})))
    response = await typed.forward(get("http://upstream.test/"))
    assert (b"Content-Type", b"application/json") in response.headers
    assert response.body == b"{}"

    untyped = make_forwarder(Upstream(lambda request: reply(200, b"raw")))
    response = await untyped.forward(get("http://upstream.test/"))
    assert not [name for name, _ in response.headers if name.lower() == b"content-type"]


async def test_forward_refuses_oversized_response() -> None:
    forwarder = make_forwarder(Upstream(lambda request: reply(200, b"x" * 101)), body_limit=100)
    with pytest.raises(UpstreamBodyTooLarge):
        await forwarder.forward(get("http://upstream.test/"))

    exact = make_forwarder(Upstream(lambda request: reply(200, b"x" * 100)), body_limit=100)
    assert (await exact.forward(get("http://upstream.test/"))).body == b"x" * 100


@pytest.mark.parametrize("error", [
    httpx.ConnectError("connection refused"),
    httpx.ConnectTimeout("timed out"),
    httpx.ReadTimeout("timed out"),
    httpx.RemoteProtocolError("garbage"),
])
async def test_forward_maps_transport_errors_to_unreachable(error: Exception) -> None:
    def fail(request: httpx.Request) -> httpx.Response:
        raise error

    forwarder = make_forwarder(Upstream(fail))
    with pytest.raises(UpstreamUnreachable):
        await forwarder.forward(get("http://upstream.test/"))


def redirecting(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/start":
        return reply(302, headers={"Location": "http://elsewhere.test/final"})
    return reply(200, b"arrived")


async def test_forward_follows_redirects() -> None:
    upstream = Upstream(redirecting)
    forwarder = make_forwarder(upstream, redirect_limit=3)
    response = await forwarder.forward(get("http://upstream.test/start"))
    assert response.status_code == 200
    assert response.body == b"arrived"
    assert [str(r.url) for r in upstream.requests] == ["http://upstream.test/start", "http://elsewhere.test/final"]


async def test_forward_redirect_limit_zero_returns_the_redirect() -> None:
    upstream = Upstream(redirecting)
    forwarder = make_forwarder(upstream, redirect_limit=0)
    response = await forwarder.forward(get("http://upstream.test/start"))
    assert response.status_code == 302
    assert (b"location", b"http://elsewhere.test/final") in [(n.lower(), v) for n, v in response.headers]
    assert len(upstream.requests) == 1


async def test_forward_does_not_replay_credentials_to_another_origin() -> None:
    upstream = Upstream(redirecting)
    # With proxy-basic, Authorization belongs to the origin, not to us.
    forwarder = make_forwarder(upstream, redirect_limit=1)
    forwarder.credential_header = b"proxy-authorization"
    await forwarder.forward(get("http://upstream.test/start", [(b"Authorization", b"Bearer origin-secret")]))

    first, second = upstream.requests
    assert first.headers["authorization"] == "Bearer origin-secret"
    assert "authorization" not in second.headers


class Drip(httpx.AsyncByteStream):
    """A response body which arrives one byte at a time."""

    def __init__(self, size: int, interval: float):
        self.size = size
        self.interval = interval

    async def __aiter__(self):
        for _ in range(self.size):
            await trio.sleep(self.interval)
            yield b"x"


async def test_forward_time_limit_covers_the_whole_response(autojump_clock) -> None:
    forwarder = make_forwarder(Upstream(lambda request: httpx.Response(200, stream=Drip(40, 0.1))), request_timeout=1.0)
    start = trio.current_time()
    with pytest.raises(UpstreamUnreachable):
        await forwarder.forward(get("http://upstream.test/"))
    assert trio.current_time() - start == pytest.approx(1.0)


async def test_forward_slow_but_in_time(autojump_clock) -> None:
    forwarder = make_forwarder(Upstream(lambda request: httpx.Response(200, stream=Drip(5, 0.1))), request_timeout=1.0)
    response = await forwarder.forward(get("http://upstream.test/"))
    assert response.body == b"xxxxx"


################################################################
#               Routing, through handle()
################################################################

def request_bytes(
        target: str = "/?url=http://upstream.test/",
        method: str = "GET",
        token: Optional[str] = TOKEN,
        headers: Tuple[str, ...] = (),
        body: bytes = b"",
    ) -> bytes:
    lines = [f"{method} {target} HTTP/1.1", "Host: proxy.test", "Connection: close"]
    if token is not None:
        lines.append(f"Authorization: Bearer {token}")
    lines.extend(headers)
    if body:
        lines.append(f"Content-Length: {len(body)}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode() + body


def parse_response(raw: bytes) -> Tuple[int, Dict[bytes, bytes], bytes]:
    head, _, body = raw.partition(b"\r\n\r\n")
    status_line, *header_lines = head.split(b"\r\n")
    headers = {}
    for line in header_lines:
        name, _, value = line.partition(b":")
        headers[name.strip().lower()] = value.strip()
    return int(status_line.split()[1]), headers, body


def make_proxy(upstream: Optional[Upstream] = None, **overrides) -> TokenProxy:
    config = ProxyConfig(auth_token=TOKEN, user_agent=UA.decode(), **overrides)
    client = make_client(config, transport=httpx.MockTransport(upstream or Upstream()))
    return TokenProxy(config, client=client)


async def exchange(proxy: TokenProxy, raw: bytes) -> bytes:
    """Send `raw` to a proxy connection, and return everything it sends back."""
    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    response = bytearray()

    async def client() -> None:
        async with client_stream:
            await client_stream.send_all(raw)
            while True:
                chunk = await client_stream.receive_some(65536)
                if not chunk:
                    break
                response.extend(chunk)

    async with trio.open_nursery() as nursery:
        nursery.start_soon(client)
        nursery.start_soon(handle, proxy_stream, proxy)
    return bytes(response)


async def test_unauthorized_without_credentials() -> None:
    upstream = Upstream()
    status, headers, body = parse_response(await exchange(make_proxy(upstream), request_bytes("/", token=None)))
    assert status == 401
    assert body == b"unauthorized"
    assert upstream.requests == []


@settings(deadline=None)
@given(token=text(min_size=1, alphabet="abcdefghijklmnopqrstuvwxyz0123456789-_"))
async def test_unauthorized_with_wrong_token(token: str) -> None:
    assume(token != TOKEN)
    upstream = Upstream()
    status, _, body = parse_response(await exchange(make_proxy(upstream), request_bytes(token=token)))
    assert (status, body) == (401, b"unauthorized")
    assert upstream.requests == []


async def test_authorized_request_is_forwarded() -> None:
    upstream = Upstream(lambda request: reply(200, b"hello", {"Content-Type": "text/plain; charset=utf-8"}))
    status, headers, body = parse_response(await exchange(make_proxy(upstream), request_bytes()))
    assert status == 200
    assert body == b"hello"
    assert headers[b"content-type"] == b"text/plain; charset=utf-8"
    assert headers[b"content-length"] == b"5"
    assert len(upstream.requests) == 1


async def test_proxy_basic_authentication() -> None:
    upstream = Upstream()
    proxy = make_proxy(upstream, auth_scheme=AuthScheme.PROXY_BASIC)
    header = "Proxy-Authorization: " + basic("proxy", TOKEN).decode()

    status, _, _ = parse_response(await exchange(proxy, request_bytes(token=None, headers=(header,))))
    assert status == 200
    status, _, _ = parse_response(await exchange(proxy, request_bytes(token=TOKEN)))
    assert status == 401
    assert "proxy-authorization" not in upstream.requests[0].headers


async def test_upstream_204_is_passed_on() -> None:
    proxy = make_proxy(Upstream(lambda request: reply(204)))
    status, headers, body = parse_response(await exchange(proxy, request_bytes()))
    assert status == 204
    assert body == b""
    assert b"content-length" not in headers


async def test_request_body_is_forwarded() -> None:
    upstream = Upstream()
    await exchange(make_proxy(upstream), request_bytes(method="POST", body=b"payload"))
    assert upstream.requests[0].method == "POST"
    assert upstream.requests[0].content == b"payload"


async def test_request_body_over_limit() -> None:
    upstream = Upstream()
    proxy = make_proxy(upstream, body_limit=10)
    status, _, _ = parse_response(await exchange(proxy, request_bytes(method="POST", body=b"x" * 11)))
    assert status == 413
    assert upstream.requests == []


async def test_head_keeps_upstream_length() -> None:
    proxy = make_proxy(Upstream(lambda request: reply(200, headers={"Content-Length": "1234"})))
    status, headers, body = parse_response(await exchange(proxy, request_bytes(method="HEAD")))
    assert status == 200
    assert headers[b"content-length"] == b"1234"
    assert body == b""


@pytest.mark.parametrize("target, expected", [
    ("/", 400),
    ("/?url=mailto:someone@example.com", 400),
    ("/elsewhere", 404),
])
async def test_bad_targets(target: str, expected: int) -> None:
    status, _, _ = parse_response(await exchange(make_proxy(), request_bytes(target)))
    assert status == expected


async def test_missing_url_param_message() -> None:
    _, _, body = parse_response(await exchange(make_proxy(), request_bytes("/")))
    assert body == b"Missing `url` param"


async def test_uri_target_mode() -> None:
    upstream = Upstream()
    proxy = make_proxy(upstream, target_mode=TargetMode.URI)
    status, _, _ = parse_response(await exchange(proxy, request_bytes("http://upstream.test/page")))
    assert status == 200
    assert str(upstream.requests[0].url) == "http://upstream.test/page"

    status, _, body = parse_response(await exchange(proxy, request_bytes("/page")))
    assert (status, body) == (404, b"nothing to see here")


async def test_upstream_failure_is_a_generic_502() -> None:
    def fail(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("secret internal detail")

    status, _, body = parse_response(await exchange(make_proxy(Upstream(fail)), request_bytes()))
    assert status == 502
    assert b"secret internal detail" not in body


async def test_oversized_upstream_response_is_a_502() -> None:
    proxy = make_proxy(Upstream(lambda request: reply(200, b"x" * 100)), body_limit=50)
    status, _, _ = parse_response(await exchange(proxy, request_bytes()))
    assert status == 502


async def test_unreachable_host_is_a_502() -> None:
    config = ProxyConfig(auth_token=TOKEN, request_timeout=5)
    proxy = TokenProxy(config)
    try:
        raw = await exchange(proxy, request_bytes("/?url=http://example.invalid"))
    finally:
        await proxy.forwarder.client.aclose()
    status, _, body = parse_response(raw)
    assert status == 502
    assert body == b"bad gateway"


async def test_internal_errors_are_a_generic_500() -> None:
    def explode(request: httpx.Request) -> httpx.Response:
        raise RuntimeError(f"{TOKEN} in a stack trace")

    status, _, body = parse_response(await exchange(make_proxy(Upstream(explode)), request_bytes()))
    assert status == 500
    assert TOKEN.encode() not in body


def keep_alive_request(path: str) -> bytes:
    return (
        f"GET /?url=http://upstream.test{path} HTTP/1.1\r\n"
        f"Host: p\r\nAuthorization: Bearer {TOKEN}\r\n\r\n"
    ).encode()


async def test_keep_alive_serves_several_requests() -> None:
    upstream = Upstream()
    one = keep_alive_request("/1")
    two = keep_alive_request("/2").replace(b"Host: p", b"Host: p\r\nConnection: close")
    raw = await exchange(make_proxy(upstream), one + two)
    assert raw.count(b"HTTP/1.1 200") == 2
    assert [r.url.path for r in upstream.requests] == ["/1", "/2"]


async def test_idle_keep_alive_connection_closes_quietly(autojump_clock) -> None:
    raw = await exchange(make_proxy(client_timeout=5), keep_alive_request("/1"))
    assert raw.count(b"HTTP/1.1 200") == 1
    assert b"HTTP/1.1 408" not in raw


async def test_stalled_second_request_gets_408(autojump_clock) -> None:
    partial = b"GET /?url=http://upstream.test/2 HTTP/1.1\r\nHo"
    raw = await exchange(make_proxy(client_timeout=5), keep_alive_request("/1") + partial)
    assert raw.count(b"HTTP/1.1 200") == 1
    assert b"HTTP/1.1 408" in raw


async def test_while_connected_cancels_work_when_client_leaves() -> None:
    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    w = TrioHTTPConnection(proxy_stream)
    cancelled = []

    async def work() -> None:
        try:
            await trio.sleep_forever()
        except trio.Cancelled:
            cancelled.append(True)
            raise

    async def hang_up() -> None:
        await trio.sleep(0.1)
        await client_stream.aclose()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(hang_up)
        with trio.fail_after(5):
            with pytest.raises(trio.BrokenResourceError):
                await w.while_connected(work)
    assert cancelled == [True]


async def test_while_connected_keeps_what_the_client_sends() -> None:
    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    w = TrioHTTPConnection(proxy_stream)

    async def work(value: int) -> int:
        await trio.sleep(0.2)
        return value

    async with trio.open_nursery() as nursery:
        nursery.start_soon(client_stream.send_all, b"GET /next")
        assert await w.while_connected(work, 42) == 42
    assert w.conn.trailing_data[0] == b"GET /next"


async def test_while_connected_passes_errors_through() -> None:
    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    w = TrioHTTPConnection(proxy_stream)

    async def work() -> None:
        raise UpstreamUnreachable("down")

    with pytest.raises(UpstreamUnreachable):
        await w.while_connected(work)


async def test_client_hanging_up_cancels_the_upstream_request() -> None:
    [listener] = await trio.open_tcp_listeners(0, host="127.0.0.1")
    port = listener.socket.getsockname()[1]
    released = trio.Event()

    async def hung_upstream() -> None:
        async with await listener.accept() as stream:
            try:
                while await stream.receive_some(65536):
                    pass  # read the request, never answer
            except trio.BrokenResourceError:
                pass
            released.set()

    proxy = TokenProxy(ProxyConfig(auth_token=TOKEN, request_timeout=30))
    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    try:
        async with listener:
            with trio.fail_after(10):
                async with trio.open_nursery() as nursery:
                    nursery.start_soon(hung_upstream)
                    nursery.start_soon(handle, proxy_stream, proxy)

                    await client_stream.send_all(request_bytes(f"/?url=http://127.0.0.1:{port}/"))
                    await trio.sleep(0.3)
                    await client_stream.aclose()
                    hung_up_at = trio.current_time()

                    await released.wait()
                    assert trio.current_time() - hung_up_at < 2
    finally:
        await proxy.forwarder.client.aclose()


async def test_connect_with_random_input() -> None:
    rand = random.Random(1234)
    for _ in range(20):
        random_length = rand.randint(1, 100)
        random_bytes = bytes(rand.getrandbits(8) for _ in range(random_length))
        random_bytes += b"\r\n\r\n"  # we must terminate the line, or the server will time out
        raw = await exchange(make_proxy(), random_bytes)
        assert raw.startswith(b"HTTP/1.1 400")


async def connect_slowly(stream: trio.abc.Stream, expected: bytes) -> None:
    """Send a request, very slowly."""
    async with stream:
        await trio.sleep(10)
        try:
            # This will blow up if the server already closed the connection.
            await stream.send_all(request_bytes())
        except trio.BrokenResourceError:
            pass
        resp = await stream.receive_some(10000)
        assert resp.startswith(expected)


async def test_client_that_times_out(autojump_clock) -> None:
    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    async with trio.open_nursery() as nursery:
        nursery.start_soon(connect_slowly, client_stream, b"HTTP/1.1 408")
        nursery.start_soon(handle, proxy_stream, make_proxy(client_timeout=5))


################################################################
#            Generating valid domains and ports
################################################################

from tokenproxy._config import Port
from tokenproxy._tunnel import parse_authority

Domain = str


def new_label(length: int, rand: random.Random) -> str:
    """
    Return a "label" element according to RFC 1035, of specified length (>0).
    """
    if length <= 0:
        raise ValueError("There are no valid zero- or negative-length labels")
    letter = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
    letter_digit = letter + "0123456789"
    letter_digit_hyphen = letter_digit + "-"

    if length == 1:
        label = rand.choice(letter)
    else:
        label = (rand.choice(letter)
            + "".join(rand.choice(letter_digit_hyphen) for _ in range(length - 2))
            + rand.choice(letter_digit)
        )
    return label

def new_domain(chunk_lengths: List[int], rand: random.Random) -> Domain:
    """
    Return a valid domain according to RFC 1035.

    `chunk_lengths` must be a non-empty list of positive integers.
    """
    if not chunk_lengths or any(l <= 0 for l in chunk_lengths):
        raise ValueError()

    return Domain(".".join(new_label(l, rand) for l in chunk_lengths))

def domains():
    return builds(new_domain, lists(integers(1, 10), min_size=1, max_size=10), randoms())

def ports(start: int = 1, end: int = 65535):
    return builds(Port, integers(start, end))


@given(domains(), ports())
def test_parse_authority(host: Domain, port: Port) -> None:
    assert parse_authority(f"{host}:{port}".encode()) == (host, port)


def test_parse_authority_ipv6() -> None:
    assert parse_authority(b"[::1]:443") == ("::1", 443)


@pytest.mark.parametrize("target", [
    b"example.com", b"example.com:", b"example.com:0", b"example.com:65536",
    b"example.com:https", b":443", b"::1:443", b"[::1]443", b"user@example.com:443",
])
def test_parse_authority_failures(target: bytes) -> None:
    with pytest.raises(BadTarget):
        parse_authority(target)


################################################################
#                     Fake DNS resolution
################################################################

class ResolveAllTo(trio.abc.HostnameResolver):
    """A fake resolver, which resolves all hostnames (and ports) to one local address."""

    def __init__(self, port: int):
        self.port = port

    async def getaddrinfo(self, host, port, family=0, type=0, proto=0, flags=0):
        # Synchronous, but should always return promptly.
        return socket.getaddrinfo("127.0.0.1", self.port, family, type, proto, flags)

    async def getnameinfo(self, sockaddr, flags):
        return await trio.socket.getnameinfo(sockaddr, flags)


def resolving_all_to(port: int):
    """Run the decorated async function with ResolveAllTo(port) as the resolver."""
    def decorator(f: Callable) -> Callable:
        @wraps(f)  # preserves function signature
        async def wrapper(*args, **kwargs):
            original_resolver = trio.socket.set_custom_hostname_resolver(ResolveAllTo(port))
            try:
                return (await f(*args, **kwargs))
            finally:
                trio.socket.set_custom_hostname_resolver(original_resolver)
        return wrapper
    return decorator


################################################################
#                     CONNECT tunnels
################################################################

from tokenproxy._tunnel import TunnelState


def connect_bytes(authority: str = "example.com:443", token: Optional[str] = TOKEN) -> bytes:
    lines = [f"CONNECT {authority} HTTP/1.1", f"Host: {authority}"]
    if token is not None:
        lines.append(f"Authorization: Bearer {token}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode()


async def read_head(stream: trio.abc.Stream) -> Tuple[bytes, bytes]:
    """Read a response head; return it and whatever came after it."""
    buffer = b""
    while b"\r\n\r\n" not in buffer:
        chunk = await stream.receive_some(65536)
        assert chunk, f"Connection closed after {buffer!r}"
        buffer += chunk
    head, _, rest = buffer.partition(b"\r\n\r\n")
    return head, rest


async def receive_exactly(stream: trio.abc.Stream, size: int) -> bytes:
    buffer = bytearray()
    while len(buffer) < size:
        chunk = await stream.receive_some(size - len(buffer))
        assert chunk, "Connection closed too early"
        buffer.extend(chunk)
    return bytes(buffer)


async def echo(listener: trio.SocketListener) -> None:
    """Accept one connection, and send back everything it sends."""
    async with await listener.accept() as stream:
        try:
            async for chunk in stream:
                await stream.send_all(chunk)
        except trio.BrokenResourceError:
            pass


async def test_connect_relays_to_stand_in_target() -> None:
    [listener] = await trio.open_tcp_listeners(0, host="127.0.0.1")
    port = listener.socket.getsockname()[1]
    received = bytearray()
    payload = b"arbitrary bytes, \x00\xff and all"

    async def stand_in() -> None:
        async with await listener.accept() as stream:
            async for chunk in stream:
                received.extend(chunk)

    @resolving_all_to(port)
    async def run() -> None:
        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        async with trio.open_nursery() as nursery:
            nursery.start_soon(stand_in)
            nursery.start_soon(handle, proxy_stream, make_proxy())

            await client_stream.send_all(connect_bytes("example.com:443"))
            head, rest = await read_head(client_stream)
            assert head.startswith(b"HTTP/1.1 200 Connection Established")
            assert rest == b""
            await client_stream.send_all(payload)
            while len(received) < len(payload):
                await trio.sleep(0.01)
            await client_stream.aclose()

    async with listener:
        with trio.fail_after(10):
            await run()
    assert bytes(received) == payload


async def test_connect_round_trip_64k() -> None:
    [listener] = await trio.open_tcp_listeners(0, host="127.0.0.1")
    port = listener.socket.getsockname()[1]
    payload = bytes(random.Random(64).getrandbits(8) for _ in range(64 * 1024))
    echoed = b""

    @resolving_all_to(port)
    async def run() -> None:
        nonlocal echoed
        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        async with trio.open_nursery() as nursery:
            nursery.start_soon(echo, listener)
            nursery.start_soon(handle, proxy_stream, make_proxy())

            await client_stream.send_all(connect_bytes())
            head, rest = await read_head(client_stream)
            assert head.startswith(b"HTTP/1.1 200")
            nursery.start_soon(client_stream.send_all, payload)
            echoed = await receive_exactly(client_stream, len(payload))
            await client_stream.aclose()

    async with listener:
        with trio.fail_after(20):
            await run()
    assert echoed == payload


async def test_connect_forwards_pipelined_bytes() -> None:
    [listener] = await trio.open_tcp_listeners(0, host="127.0.0.1")
    port = listener.socket.getsockname()[1]
    hello = b"\x16\x03\x01 not really a ClientHello"

    @resolving_all_to(port)
    async def run() -> None:
        client_stream, proxy_stream = trio.testing.memory_stream_pair()
        async with trio.open_nursery() as nursery:
            nursery.start_soon(echo, listener)
            nursery.start_soon(handle, proxy_stream, make_proxy())

            await client_stream.send_all(connect_bytes() + hello)
            head, rest = await read_head(client_stream)
            assert head.startswith(b"HTTP/1.1 200")
            assert rest + await receive_exactly(client_stream, len(hello) - len(rest)) == hello
            await client_stream.aclose()

    async with listener:
        with trio.fail_after(10):
            await run()


async def test_connect_unauthorized_never_dials() -> None:
    [listener] = await trio.open_tcp_listeners(0, host="127.0.0.1")
    port = listener.socket.getsockname()[1]

    @resolving_all_to(port)
    async def run() -> bytes:
        return await exchange(make_proxy(), connect_bytes(token="nope"))

    async with listener:
        raw = await run()
        with trio.move_on_after(0.2) as cancel_scope:
            await listener.accept()
        assert cancel_scope.cancelled_caught, "The proxy should not have connected"

    status, _, body = parse_response(raw)
    assert (status, body) == (401, b"unauthorized")


@pytest.mark.parametrize("authority", ["example.com", "example.com:99999", "exa mple"])
async def test_connect_with_bad_authority(authority: str) -> None:
    raw = await exchange(make_proxy(), connect_bytes(authority.replace(" ", "")))
    assert raw.startswith(b"HTTP/1.1 400")


async def test_connect_disabled() -> None:
    raw = await exchange(make_proxy(allow_connect=False), connect_bytes())
    assert raw.startswith(b"HTTP/1.1 404")


async def test_connect_to_dead_upstream_just_closes() -> None:
    with trio.socket.socket() as sock:
        await sock.bind(("127.0.0.1", 0))
        _, port = sock.getsockname()
    # Nobody listens on `port` now.

    @resolving_all_to(port)
    async def run() -> bytes:
        return await exchange(make_proxy(request_timeout=5), connect_bytes())

    with trio.fail_after(10):
        raw = await run()
    assert raw.startswith(b"HTTP/1.1 200")
    _, _, after = raw.partition(b"\r\n\r\n")
    assert after == b""  # no second response


async def test_tunnel_session_states() -> None:
    from tokenproxy._tunnel import TunnelSession

    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    session = TunnelSession(TrioHTTPConnection(proxy_stream), make_proxy().config)
    assert session.state is TunnelState.AWAITING_HANDSHAKE
    with pytest.raises(BadTarget):
        await session.run(b"no-port-here")
    assert session.state is TunnelState.CLOSED


################################################################
#                     Shutdown
################################################################

from tokenproxy._shutdown import ShutdownCoordinator


async def open_listeners() -> Tuple[List[trio.SocketListener], int]:
    listeners = await trio.open_tcp_listeners(0, host="127.0.0.1")
    return listeners, listeners[0].socket.getsockname()[1]


async def wait_for(predicate: Callable[[], bool]) -> None:
    while not predicate():
        await trio.sleep(0.01)


async def test_shutdown_stops_accepting() -> None:
    coordinator = ShutdownCoordinator(grace=1)
    listeners, port = await open_listeners()
    handled = []

    async def handler(stream: trio.SocketStream) -> None:
        handled.append(stream)
        await stream.aclose()

    async with trio.open_nursery() as nursery:
        await nursery.start(coordinator.serve, handler, listeners)
        (await trio.open_tcp_stream("127.0.0.1", port)).socket.close()
        with trio.fail_after(5):
            await wait_for(lambda: len(handled) == 1)

        assert not coordinator.shutting_down
        coordinator.shutdown()
        assert coordinator.shutting_down
        with trio.fail_after(5):
            await coordinator.wait_done()
        assert coordinator.done.is_set()

    with pytest.raises(OSError):
        await trio.open_tcp_stream("127.0.0.1", port)
    assert len(handled) == 1


async def test_shutdown_lets_sessions_finish() -> None:
    coordinator = ShutdownCoordinator(grace=5)
    listeners, port = await open_listeners()
    finished = []

    async def handler(stream: trio.SocketStream) -> None:
        async with stream:
            await trio.sleep(0.2)
            finished.append(True)

    async with trio.open_nursery() as nursery:
        await nursery.start(coordinator.serve, handler, listeners)
        client = await trio.open_tcp_stream("127.0.0.1", port)
        await wait_for(lambda: coordinator.in_flight == 1)

        start = trio.current_time()
        coordinator.shutdown()
        await coordinator.wait_done()
        await client.aclose()

    assert finished == [True]
    assert trio.current_time() - start < 5


async def test_shutdown_force_closes_after_grace() -> None:
    grace = 0.3
    coordinator = ShutdownCoordinator(grace=grace)
    listeners, port = await open_listeners()
    cancelled = []

    async def handler(stream: trio.SocketStream) -> None:
        async with stream:
            try:
                await trio.sleep_forever()
            except trio.Cancelled:
                cancelled.append(True)
                raise

    async with trio.open_nursery() as nursery:
        await nursery.start(coordinator.serve, handler, listeners)
        client = await trio.open_tcp_stream("127.0.0.1", port)
        await wait_for(lambda: coordinator.in_flight == 1)

        start = trio.current_time()
        coordinator.shutdown()
        coordinator.shutdown()  # a second request changes nothing
        assert coordinator.shutting_down
        with trio.fail_after(grace + 2):
            await coordinator.done.wait()
        elapsed = trio.current_time() - start

        # The proxy side is gone, so the client sees EOF.
        assert await client.receive_some(10) == b""
        await client.aclose()

    assert cancelled == [True]
    assert coordinator.in_flight == 0
    assert grace <= elapsed < grace + 2


async def test_shutdown_closes_tunnels() -> None:
    [upstream_listener] = await trio.open_tcp_listeners(0, host="127.0.0.1")
    upstream_port = upstream_listener.socket.getsockname()[1]
    proxy = make_proxy(shutdown_grace=0.2)

    @resolving_all_to(upstream_port)
    async def run() -> None:
        async with trio.open_nursery() as nursery:
            nursery.start_soon(echo, upstream_listener)
            [listener] = await nursery.start(proxy.listen, "127.0.0.1", 0)
            proxy_port = listener.socket.getsockname()[1]

            client = await trio.open_tcp_stream("127.0.0.1", proxy_port)
            await client.send_all(connect_bytes())
            head, _ = await read_head(client)
            assert head.startswith(b"HTTP/1.1 200")
            await client.send_all(b"ping")
            assert await receive_exactly(client, 4) == b"ping"

            proxy.shutdown()
            await proxy.coordinator.wait_done()
            # Tunnel force-closed: the client sees the end of the stream.
            assert await client.receive_some(10) == b""
            await client.aclose()

    async with upstream_listener:
        with trio.fail_after(10):
            await run()


async def test_listen_end_to_end() -> None:
    upstream = Upstream(lambda request: reply(200, b"through the proxy"))
    proxy = make_proxy(upstream)

    async with trio.open_nursery() as nursery:
        [listener] = await nursery.start(proxy.listen, "127.0.0.1", 0)
        port = listener.socket.getsockname()[1]

        async with await trio.open_tcp_stream("127.0.0.1", port) as client:
            await client.send_all(request_bytes())
            raw = b""
            async for chunk in client:
                raw += chunk

        proxy.shutdown()

    status, _, body = parse_response(raw)
    assert (status, body) == (200, b"through the proxy")
    assert upstream.requests[0].headers["user-agent"] == UA.decode()
