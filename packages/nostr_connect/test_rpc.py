"""Tests for the RPC engine (correlation, dispatch, teardown)."""

import asyncio
import json

import pytest

from nostr_connect import envelope
from nostr_connect.constants import NOSTR_CONNECT_KIND, ConnectMethod
from nostr_connect.event import Event
from nostr_connect.exceptions import (
    RemoteError,
    RequestTimeoutError,
    UnsupportedMethodError,
)
from nostr_connect.keys import generate_secret_key, get_public_key
from nostr_connect.protocol import Request, Response
from nostr_connect.relay import Filter
from nostr_connect.rpc import NostrRPC, RequestContext


def make_rpc(secret, relay_url, transport_factory, **kwargs):
    return NostrRPC(relay_url, secret, transport_factory=transport_factory, **kwargs)


async def open_relay(transport_factory, relay_url):
    relay = transport_factory(relay_url)
    await relay.connect()
    return relay


async def inbox(relay, secret):
    return await relay.subscribe(Filter(kinds=[NOSTR_CONNECT_KIND], p_tags=[get_public_key(secret)]))


async def reply(relay, secret, request_event, response):
    await relay.publish(envelope.encode(secret, request_event.pubkey, response.to_json()))


class TestCall:
    """Tests for outbound calls."""

    @pytest.mark.asyncio
    async def test_resolves_with_result(self, hub, transport_factory, relay_url, app_secret, signer_secret):
        responder = make_rpc(signer_secret, relay_url, transport_factory)
        responder.register(ConnectMethod.GET_PUBLIC_KEY, lambda ctx: "pk1")
        await responder.listen()
        caller = make_rpc(app_secret, relay_url, transport_factory)

        result = await caller.call(responder.public_key, ConnectMethod.GET_PUBLIC_KEY)

        assert result == "pk1"
        await caller.disconnect_relays()
        await responder.disconnect_relays()

    @pytest.mark.asyncio
    async def test_remote_error_rejects_call(self, transport_factory, relay_url, app_secret, signer_secret):
        def sign_event(ctx, draft):
            raise ValueError("bad kind")

        responder = make_rpc(signer_secret, relay_url, transport_factory)
        responder.register(ConnectMethod.SIGN_EVENT, sign_event)
        await responder.listen()
        caller = make_rpc(app_secret, relay_url, transport_factory)

        with pytest.raises(RemoteError) as exc_info:
            await caller.call(responder.public_key, "sign_event", [{"kind": 1}])

        assert str(exc_info.value) == "bad kind"
        assert exc_info.value.method == "sign_event"

    @pytest.mark.asyncio
    async def test_falsy_result_resolves(self, transport_factory, relay_url, app_secret, signer_secret):
        responder = make_rpc(signer_secret, relay_url, transport_factory)
        responder.register(ConnectMethod.DESCRIBE, lambda ctx: [])
        await responder.listen()
        caller = make_rpc(app_secret, relay_url, transport_factory, call_timeout=1.0)

        assert await caller.call(responder.public_key, ConnectMethod.DESCRIBE) == []

    @pytest.mark.asyncio
    async def test_uses_given_request_id(self, transport_factory, relay_url, app_secret, signer_secret):
        relay = await open_relay(transport_factory, relay_url)
        sub = await inbox(relay, signer_secret)
        caller = make_rpc(app_secret, relay_url, transport_factory)

        await caller.call(get_public_key(signer_secret), "describe", request_id="abc", skip_response=True)

        event = await asyncio.wait_for(sub.next_event(), 1)
        assert envelope.decode_payload(signer_secret, event) == {"id": "abc", "method": "describe", "params": []}

    @pytest.mark.asyncio
    async def test_skip_response_returns_after_publish(self, hub, transport_factory, relay_url, app_secret, signer_secret):
        caller = make_rpc(app_secret, relay_url, transport_factory, call_timeout=None)

        result = await caller.call(get_public_key(signer_secret), ConnectMethod.CONNECT, ["pk"], skip_response=True)

        assert result is None
        assert hub.publish_count == 1
        # the per-call subscription is cancelled immediately
        assert hub.relays[0].subscriptions == {}

    @pytest.mark.asyncio
    async def test_timeout_rejects_and_closes_subscription(self, hub, transport_factory, relay_url, app_secret, signer_secret):
        caller = make_rpc(app_secret, relay_url, transport_factory, call_timeout=0.1)

        with pytest.raises(RequestTimeoutError) as exc_info:
            await caller.call(get_public_key(signer_secret), ConnectMethod.DISCONNECT)

        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.method == "disconnect"
        assert hub.relays[0].subscriptions == {}

    @pytest.mark.asyncio
    async def test_without_timeout_call_never_resolves(self, transport_factory, relay_url, app_secret, signer_secret):
        caller = make_rpc(app_secret, relay_url, transport_factory, call_timeout=None)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(caller.call(get_public_key(signer_secret), ConnectMethod.DISCONNECT), 0.2)

    @pytest.mark.asyncio
    async def test_per_call_timeout_overrides_default(self, transport_factory, relay_url, app_secret, signer_secret):
        caller = make_rpc(app_secret, relay_url, transport_factory, call_timeout=None)

        with pytest.raises(RequestTimeoutError) as exc_info:
            await caller.call(get_public_key(signer_secret), "describe", timeout=0.05)
        assert exc_info.value.timeout == 0.05

    @pytest.mark.asyncio
    async def test_reuses_outbound_channel(self, hub, transport_factory, relay_url, app_secret, signer_secret):
        caller = make_rpc(app_secret, relay_url, transport_factory)
        target = get_public_key(signer_secret)

        await caller.call(target, "describe", skip_response=True)
        await caller.call(target, "describe", skip_response=True)

        assert len(hub.relays) == 1
        assert hub.relays[0].connect_count == 1


class TestCorrelation:
    """Responses are matched to calls by request id only."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_resolve_independently(self, transport_factory, relay_url, app_secret, signer_secret):
        relay = await open_relay(transport_factory, relay_url)
        sub = await inbox(relay, signer_secret)
        caller = make_rpc(app_secret, relay_url, transport_factory, call_timeout=2.0)
        target = get_public_key(signer_secret)

        async def respond_in_reverse():
            requests = []
            async for event in sub:
                requests.append((event, envelope.decode_payload(signer_secret, event)))
                if len(requests) == 2:
                    break
            for event, payload in reversed(requests):
                await reply(relay, signer_secret, event, Response(id="foreign", result="wrong"))
                await reply(relay, signer_secret, event, Response(id=payload["id"], result=payload["params"][0]))

        responder = asyncio.create_task(respond_in_reverse())
        first, second = await asyncio.gather(
            caller.call(target, "nip04_encrypt", ["first"]),
            caller.call(target, "nip04_encrypt", ["second"]),
        )
        await responder

        assert (first, second) == ("first", "second")

    @pytest.mark.asyncio
    async def test_malformed_traffic_is_ignored(self, transport_factory, relay_url, app_secret, signer_secret):
        relay = await open_relay(transport_factory, relay_url)
        sub = await inbox(relay, signer_secret)
        caller = make_rpc(app_secret, relay_url, transport_factory, call_timeout=2.0)
        app = get_public_key(app_secret)

        async def respond():
            event = await sub.next_event()
            payload = envelope.decode_payload(signer_secret, event)
            # undecryptable content
            await relay.publish(Event(
                pubkey="", kind=NOSTR_CONNECT_KIND, content="garbage", tags=[["p", app]]
            ).sign(signer_secret))
            # decrypts, but is a request rather than a response
            await relay.publish(envelope.encode(signer_secret, app, json.dumps({"id": payload["id"], "method": "x", "params": []})))
            # response with a missing field
            await relay.publish(envelope.encode(signer_secret, app, json.dumps({"id": payload["id"], "result": "partial"})))
            await reply(relay, signer_secret, event, Response(id=payload["id"], result="ok"))

        responder = asyncio.create_task(respond())
        result = await caller.call(get_public_key(signer_secret), "describe")
        await responder

        assert result == "ok"

    @pytest.mark.asyncio
    async def test_foreign_id_never_resolves_call(self, transport_factory, relay_url, app_secret, signer_secret):
        relay = await open_relay(transport_factory, relay_url)
        sub = await inbox(relay, signer_secret)
        caller = make_rpc(app_secret, relay_url, transport_factory, call_timeout=0.3)

        async def respond_with_wrong_id():
            event = await sub.next_event()
            await reply(relay, signer_secret, event, Response(id="not-yours", result="wrong"))

        responder = asyncio.create_task(respond_with_wrong_id())
        with pytest.raises(RequestTimeoutError):
            await caller.call(get_public_key(signer_secret), "describe")
        await responder

    @pytest.mark.asyncio
    async def test_responses_from_other_authors_ignored(self, transport_factory, relay_url, app_secret, signer_secret):
        impostor = generate_secret_key()
        relay = await open_relay(transport_factory, relay_url)
        sub = await inbox(relay, signer_secret)
        caller = make_rpc(app_secret, relay_url, transport_factory, call_timeout=0.3)

        async def impostor_reply():
            event = await sub.next_event()
            payload = envelope.decode_payload(signer_secret, event)
            await reply(relay, impostor, event, Response(id=payload["id"], result="spoofed"))

        responder = asyncio.create_task(impostor_reply())
        with pytest.raises(RequestTimeoutError):
            await caller.call(get_public_key(signer_secret), "describe")
        await responder


class TestListen:
    """Tests for the inbound request loop."""

    @pytest.mark.asyncio
    async def test_publishes_response_to_sender(self, transport_factory, relay_url, app_secret, signer_secret):
        responder = make_rpc(signer_secret, relay_url, transport_factory)
        responder.register(ConnectMethod.GET_PUBLIC_KEY, lambda ctx: "pk1")
        await responder.listen()

        relay = await open_relay(transport_factory, relay_url)
        responses = await relay.subscribe(Filter(
            kinds=[NOSTR_CONNECT_KIND], authors=[responder.public_key], p_tags=[get_public_key(app_secret)]
        ))
        body = json.dumps({"id": "1", "method": "get_public_key", "params": []})
        await relay.publish(envelope.encode(app_secret, responder.public_key, body))

        event = await asyncio.wait_for(responses.next_event(), 1)
        assert envelope.decode_payload(app_secret, event) == {"id": "1", "result": "pk1", "error": None}

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_error_response(self, transport_factory, relay_url, app_secret, signer_secret):
        async def sign_event(ctx, draft):
            raise RuntimeError("bad kind")

        responder = make_rpc(signer_secret, relay_url, transport_factory)
        responder.register(ConnectMethod.SIGN_EVENT, sign_event)
        await responder.listen()

        relay = await open_relay(transport_factory, relay_url)
        responses = await relay.subscribe(Filter(kinds=[NOSTR_CONNECT_KIND], authors=[responder.public_key]))
        body = json.dumps({"id": "2", "method": "sign_event", "params": [{"kind": 1}]})
        await relay.publish(envelope.encode(app_secret, responder.public_key, body))

        event = await asyncio.wait_for(responses.next_event(), 1)
        assert envelope.decode_payload(app_secret, event) == {"id": "2", "result": None, "error": "bad kind"}

    @pytest.mark.asyncio
    async def test_undecryptable_requests_dropped(self, hub, transport_factory, relay_url, app_secret, signer_secret):
        responder = make_rpc(signer_secret, relay_url, transport_factory)
        responder.register(ConnectMethod.DESCRIBE, lambda ctx: ["describe"])
        await responder.listen()
        relay = await open_relay(transport_factory, relay_url)

        await relay.publish(Event(
            pubkey="", kind=NOSTR_CONNECT_KIND, content="garbage", tags=[["p", responder.public_key]]
        ).sign(app_secret))
        await relay.publish(envelope.encode(app_secret, responder.public_key, '{"id": "1"}'))
        await asyncio.sleep(0.05)

        assert responder.is_listening
        assert hub.publish_count == 2

    @pytest.mark.asyncio
    async def test_listen_is_idempotent(self, hub, transport_factory, relay_url, signer_secret):
        responder = make_rpc(signer_secret, relay_url, transport_factory)

        first = await responder.listen()
        second = await responder.listen()

        assert first is second
        assert len(hub.relays) == 1

    @pytest.mark.asyncio
    async def test_handler_receives_request_context(self, transport_factory, relay_url, app_secret, signer_secret):
        seen = []

        def get_public_key_handler(ctx):
            seen.append(ctx.sender)
            return "pk"

        responder = make_rpc(signer_secret, relay_url, transport_factory)
        responder.register(ConnectMethod.GET_PUBLIC_KEY, get_public_key_handler)
        await responder.listen()
        caller = make_rpc(app_secret, relay_url, transport_factory, call_timeout=1.0)

        await caller.call(responder.public_key, ConnectMethod.GET_PUBLIC_KEY)

        assert seen == [get_public_key(app_secret)]


class TestHandleRequest:
    """Tests for dispatch of decoded requests."""

    def context(self, secret):
        return RequestContext(event=Event(pubkey="", kind=NOSTR_CONNECT_KIND, content="").sign(secret))

    @pytest.mark.asyncio
    async def test_unknown_method(self, relay_url, transport_factory, app_secret, signer_secret):
        rpc = make_rpc(signer_secret, relay_url, transport_factory)

        response = await rpc.handle_request(Request(id="9", method="get_relays"), self.context(app_secret))

        assert response.id == "9"
        assert response.result is None
        assert response.error == "Unsupported method: get_relays"

    @pytest.mark.asyncio
    async def test_known_but_unregistered_method(self, relay_url, transport_factory, app_secret, signer_secret):
        rpc = make_rpc(signer_secret, relay_url, transport_factory)

        response = await rpc.handle_request(Request(id="1", method="sign_psbt"), self.context(app_secret))

        assert response.error == "Unsupported method: sign_psbt"

    @pytest.mark.asyncio
    async def test_wrong_arity(self, relay_url, transport_factory, app_secret, signer_secret):
        rpc = make_rpc(signer_secret, relay_url, transport_factory)
        rpc.register(ConnectMethod.GET_PUBLIC_KEY, lambda ctx: "pk")

        response = await rpc.handle_request(Request(id="1", method="get_public_key", params=[1, 2]), self.context(app_secret))

        assert response.result is None
        assert response.error

    @pytest.mark.asyncio
    async def test_params_must_be_array(self, relay_url, transport_factory, app_secret, signer_secret):
        rpc = make_rpc(signer_secret, relay_url, transport_factory)
        rpc.register(ConnectMethod.DESCRIBE, lambda ctx: [])

        response = await rpc.handle_request(Request(id="1", method="describe", params=None), self.context(app_secret))

        assert response.error == "describe: params must be an array"

    @pytest.mark.asyncio
    async def test_unserializable_result_becomes_error(self, relay_url, transport_factory, app_secret, signer_secret):
        rpc = make_rpc(signer_secret, relay_url, transport_factory)
        rpc.register(ConnectMethod.DESCRIBE, lambda ctx: object())

        response = await rpc.handle_request(Request(id="1", method="describe"), self.context(app_secret))

        assert response.result is None
        assert response.error

    @pytest.mark.asyncio
    async def test_exception_without_message(self, relay_url, transport_factory, app_secret, signer_secret):
        def fail(ctx):
            raise RuntimeError()

        rpc = make_rpc(signer_secret, relay_url, transport_factory)
        rpc.register(ConnectMethod.DESCRIBE, fail)

        response = await rpc.handle_request(Request(id="1", method="describe"), self.context(app_secret))

        assert response.error == "unknown error"

    def test_register_rejects_unknown_method(self, relay_url, transport_factory, signer_secret):
        rpc = make_rpc(signer_secret, relay_url, transport_factory)
        with pytest.raises(UnsupportedMethodError):
            rpc.register("get_relays", lambda ctx: {})

    def test_methods_lists_registered(self, relay_url, transport_factory, signer_secret):
        rpc = make_rpc(signer_secret, relay_url, transport_factory)
        rpc.register(ConnectMethod.DESCRIBE, lambda ctx: [])
        rpc.register("get_public_key", lambda ctx: "")

        assert rpc.methods == ["describe", "get_public_key"]


class TestTeardown:
    """Tests for channel teardown."""

    @pytest.mark.asyncio
    async def test_disconnect_relays_twice(self, hub, transport_factory, relay_url, app_secret, signer_secret):
        rpc = make_rpc(app_secret, relay_url, transport_factory)
        await rpc.listen()
        await rpc.call(get_public_key(signer_secret), "describe", skip_response=True)

        await rpc.disconnect_relays()
        await rpc.disconnect_relays()

        assert len(hub.relays) == 2
        assert all(not relay.is_connected for relay in hub.relays)
        assert not rpc.is_listening

    @pytest.mark.asyncio
    async def test_disconnect_without_channels(self, hub, transport_factory, relay_url, app_secret):
        rpc = make_rpc(app_secret, relay_url, transport_factory)

        await rpc.disconnect_relays()

        assert hub.relays == []

    @pytest.mark.asyncio
    async def test_channels_reopen_after_teardown(self, hub, transport_factory, relay_url, app_secret, signer_secret):
        rpc = make_rpc(app_secret, relay_url, transport_factory)
        await rpc.call(get_public_key(signer_secret), "describe", skip_response=True)
        await rpc.disconnect_relays()

        await rpc.call(get_public_key(signer_secret), "describe", skip_response=True)

        assert hub.publish_count == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
