import asyncio
from types import SimpleNamespace

from conftest import (
    PEER_A,
    PEER_B,
    FakeAdapter,
    FakeProvider,
    settle,
    stream_pair,
    wait_until,
)
from config import SERVICE_IDS
from connection.models import ConnectionStatus
from connection.state import ConnectionStateMachine
from discovery.cache import DiscoveryCache
from discovery.models import BondState, PeerDevice
from discovery.service import DiscoveryService
from transport.models import ConnectionStrategy, connect_strategies
from transport.negotiator import CONNECT_FAILED_MESSAGE, TransportNegotiator

STRATEGIES = connect_strategies()


def build(adapter=None, provider=None, **options):
    adapter = adapter or FakeAdapter(bonded=[PEER_B])
    provider = provider or FakeProvider()
    state = ConnectionStateMachine()
    discovery = DiscoveryService(adapter, DiscoveryCache())
    env = SimpleNamespace(
        adapter=adapter, provider=provider, state=state, discovery=discovery,
        connected=[], notes=[],
    )
    settings = {
        "accept_timeout": 0.05,
        "listen_window": 0.3,
        "accept_retry_delay": 0.01,
        "connect_timeout": 1.0,
        "bond_timeout": 1.0,
    }
    settings.update(options)
    env.negotiator = TransportNegotiator(
        adapter,
        provider,
        state,
        discovery,
        on_connected=env.connected.append,
        notify=lambda kind, message: env.notes.append((kind, message)),
        **settings,
    )
    return env


def status_is(env, status):
    return lambda: env.state.status == status


# --- Connecting ---

def test_strategies_tried_in_order_until_one_succeeds():
    winner = ConnectionStrategy.insecure_service(SERVICE_IDS[1])

    async def scenario():
        env = build(provider=FakeProvider(succeed_on=winner))
        env.adapter._scanning = True
        assert env.negotiator.connect(PEER_B)
        assert env.state.status == ConnectionStatus.CONNECTING
        await wait_until(status_is(env, ConnectionStatus.CONNECTED))
        return env

    env = asyncio.run(scenario())
    index = STRATEGIES.index(winner)
    assert env.provider.attempts == STRATEGIES[: index + 1]
    assert all(sock.closed for sock in env.provider.attempt_sockets[:index])
    assert env.connected == [env.state.stream]
    assert env.state.state.peer == PEER_B
    assert not env.adapter.is_scanning


def test_all_strategies_failing_moves_to_failed():
    async def scenario():
        env = build()
        env.negotiator.connect(PEER_B)
        await wait_until(status_is(env, ConnectionStatus.FAILED))
        await settle()
        return env

    env = asyncio.run(scenario())
    assert env.provider.attempts == STRATEGIES
    assert all(sock.closed for sock in env.provider.attempt_sockets)
    assert ("error", CONNECT_FAILED_MESSAGE) in env.notes
    assert env.state.stream is None
    assert not env.negotiator.is_connecting
    assert env.connected == []


def test_stream_that_is_not_connected_is_closed_and_skipped():
    async def scenario():
        env = build(provider=FakeProvider(dead_on=STRATEGIES[0], succeed_on=STRATEGIES[1]))
        env.negotiator.connect(PEER_B)
        await wait_until(status_is(env, ConnectionStatus.CONNECTED))
        return env

    env = asyncio.run(scenario())
    assert env.provider.dead_streams[0].closed
    assert env.provider.attempts == STRATEGIES[:2]


def test_attempt_timeout_moves_to_next_strategy():
    async def scenario():
        env = build(provider=FakeProvider(hang=True), connect_timeout=0.01)
        env.negotiator.connect(PEER_B)
        await wait_until(status_is(env, ConnectionStatus.FAILED))
        return env

    env = asyncio.run(scenario())
    assert env.provider.attempts == STRATEGIES
    assert all(sock.closed for sock in env.provider.attempt_sockets)


def test_only_one_negotiation_at_a_time():
    async def scenario():
        env = build(provider=FakeProvider(hang=True), connect_timeout=30)
        assert env.negotiator.connect(PEER_B)
        await wait_until(lambda: env.provider.attempts)
        assert not env.negotiator.connect(PEER_A)
        assert not env.negotiator.listen()
        assert env.state.state.peer == PEER_B

        env.negotiator.cancel()
        env.state.disconnect()
        await settle()
        return env

    env = asyncio.run(scenario())
    assert len(env.provider.attempts) == 1
    assert env.provider.attempt_sockets[0].closed
    assert env.state.status == ConnectionStatus.IDLE
    assert not env.negotiator.is_connecting


def test_connect_rejected_while_connected():
    async def scenario():
        env = build(provider=FakeProvider(succeed_on=STRATEGIES[0]))
        env.negotiator.connect(PEER_B)
        await wait_until(status_is(env, ConnectionStatus.CONNECTED))
        assert not env.negotiator.connect(PEER_A)
        assert not env.negotiator.listen()
        return env

    env = asyncio.run(scenario())
    assert env.state.state.peer == PEER_B
    assert len(env.provider.attempts) == 1


def test_connect_rejected_while_a_dropped_link_is_still_attached():
    async def scenario():
        env = build(provider=FakeProvider(succeed_on=STRATEGIES[0]))
        env.negotiator.connect(PEER_B)
        await wait_until(status_is(env, ConnectionStatus.CONNECTED))
        env.state.stream.connected = False
        assert not env.negotiator.connect(PEER_A)
        assert not env.negotiator.listen()
        assert env.state.status == ConnectionStatus.CONNECTED

        env.state.transfer_complete()
        assert not env.negotiator.connect(PEER_A)
        assert not env.negotiator.listen()
        return env

    env = asyncio.run(scenario())
    assert env.state.status == ConnectionStatus.TRANSFER_COMPLETE
    assert len(env.provider.attempts) == 1


def test_radio_off_fails_without_socket_work():
    async def scenario():
        env = build(adapter=FakeAdapter(bonded=[PEER_B], enabled=False))
        env.negotiator.connect(PEER_B)
        await wait_until(status_is(env, ConnectionStatus.FAILED))
        return env

    env = asyncio.run(scenario())
    assert env.provider.attempts == []


# --- Bonding ---

NEW_PEER = PeerDevice(address="CC:CC:CC:CC:CC:03", name="New phone")


def test_unbonded_peer_resumes_after_bonding():
    async def scenario():
        env = build(
            adapter=FakeAdapter(bonded=[]),
            provider=FakeProvider(succeed_on=STRATEGIES[0]),
        )
        env.negotiator.connect(NEW_PEER)
        await wait_until(lambda: env.adapter.bond_requests)
        await settle()
        assert env.provider.attempts == []
        assert env.state.status == ConnectionStatus.CONNECTING

        env.negotiator.resolve_bond(NEW_PEER.address.lower(), BondState.BONDED)
        await wait_until(status_is(env, ConnectionStatus.CONNECTED))
        return env

    env = asyncio.run(scenario())
    assert env.adapter.bond_requests == [NEW_PEER]
    assert any(kind == "info" for kind, _ in env.notes)
    assert env.state.state.peer.address == NEW_PEER.address
    assert env.state.state.peer.bonded


def test_failed_bond_fails_connection():
    async def scenario():
        env = build(adapter=FakeAdapter(bonded=[]), provider=FakeProvider(succeed_on=STRATEGIES[0]))
        env.negotiator.connect(NEW_PEER)
        await wait_until(lambda: env.adapter.bond_requests)
        env.negotiator.resolve_bond(NEW_PEER.address, BondState.FAILED)
        await wait_until(status_is(env, ConnectionStatus.FAILED))
        return env

    env = asyncio.run(scenario())
    assert env.provider.attempts == []
    assert ("error", CONNECT_FAILED_MESSAGE) in env.notes


def test_bond_wait_is_bounded():
    async def scenario():
        env = build(adapter=FakeAdapter(bonded=[]), bond_timeout=0.05)
        env.negotiator.connect(NEW_PEER)
        await wait_until(status_is(env, ConnectionStatus.FAILED))
        return env

    env = asyncio.run(scenario())
    assert env.provider.attempts == []


def test_bond_result_for_another_peer_is_ignored():
    async def scenario():
        env = build(adapter=FakeAdapter(bonded=[]))
        env.negotiator.connect(NEW_PEER)
        await wait_until(lambda: env.adapter.bond_requests)
        env.negotiator.resolve_bond(PEER_A.address, BondState.BONDED)
        env.negotiator.resolve_bond(NEW_PEER.address, BondState.BONDING)
        await settle()
        still_waiting = env.negotiator.is_connecting and env.provider.attempts == []
        env.negotiator.cancel()
        env.state.disconnect()
        return still_waiting

    assert asyncio.run(scenario())


# --- Listening ---

def test_listen_accepts_first_incoming_stream():
    async def scenario():
        env = build(listen_window=5)
        assert env.negotiator.listen()
        assert env.state.status == ConnectionStatus.LISTENING
        await wait_until(lambda: len(env.provider.listeners) == len(env.negotiator.endpoints))
        incoming, _ = stream_pair(remote_peer=PEER_A)
        env.provider.listeners[3].deliver(incoming)
        await wait_until(status_is(env, ConnectionStatus.CONNECTED))
        return env, incoming

    env, incoming = asyncio.run(scenario())
    assert env.state.stream is incoming
    assert env.state.state.peer == PEER_A
    assert env.connected == [incoming]
    assert env.adapter.discoverable
    assert all(acceptor.closed for acceptor in env.provider.listeners)


def test_listen_window_elapsing_moves_to_failed():
    async def scenario():
        env = build(listen_window=0.1)
        env.negotiator.listen()
        await wait_until(status_is(env, ConnectionStatus.FAILED))
        return env

    env = asyncio.run(scenario())
    assert env.provider.listeners
    assert all(acceptor.closed for acceptor in env.provider.listeners)
    assert ("error", CONNECT_FAILED_MESSAGE) in env.notes


def test_listen_skips_endpoints_that_cannot_bind():
    async def scenario():
        env = build(
            provider=FakeProvider(fail_bind={(SERVICE_IDS[0], True), (SERVICE_IDS[0], False)}),
            listen_window=5,
        )
        env.negotiator.listen()
        await wait_until(lambda: len(env.provider.listeners) == len(env.negotiator.endpoints) - 2)
        incoming, _ = stream_pair(remote_peer=PEER_A)
        env.provider.listeners[0].deliver(incoming)
        await wait_until(status_is(env, ConnectionStatus.CONNECTED))
        return env

    env = asyncio.run(scenario())
    assert all(a.service_id != SERVICE_IDS[0] for a in env.provider.listeners)


def test_listen_fails_when_nothing_binds():
    every_endpoint = {(s, secure) for s in SERVICE_IDS for secure in (True, False)}

    async def scenario():
        env = build(provider=FakeProvider(fail_bind=every_endpoint))
        env.negotiator.listen()
        await wait_until(status_is(env, ConnectionStatus.FAILED))
        return env

    env = asyncio.run(scenario())
    assert env.provider.listeners == []


def test_disconnect_while_listening_closes_acceptors():
    async def scenario():
        env = build(listen_window=30)
        env.negotiator.listen()
        await wait_until(lambda: len(env.provider.listeners) == len(env.negotiator.endpoints))
        env.negotiator.cancel()
        env.state.disconnect()
        await settle()
        return env

    env = asyncio.run(scenario())
    assert env.state.status == ConnectionStatus.IDLE
    assert all(acceptor.closed for acceptor in env.provider.listeners)
    assert env.notes == []
