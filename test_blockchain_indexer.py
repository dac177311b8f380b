import asyncio

from conftest import FACTORY, market_address, settle


def test_initialize_backfills_and_subscribes_every_open_market(make_indexer, chain):
    open_markets = [market_address(i) for i in range(3)]
    for address in open_markets:
        chain.add_market(address)
    resolved = market_address(7)
    chain.add_market(resolved, resolved=True, outcome=1)

    async def scenario():
        indexer = make_indexer()
        await indexer.initialize()
        active = sorted(indexer.registry.active_markets())
        subscriptions = dict(indexer.connection.subscriptions)
        await indexer.cleanup()
        return indexer, active, subscriptions

    indexer, active, subscriptions = asyncio.run(scenario())

    assert sorted(indexer.store.markets) == sorted(open_markets + [resolved])
    assert indexer.store.markets[resolved].winning_outcome == 1
    assert active == sorted(open_markets)
    # factory MarketCreated + trade/resolution per open market
    assert len(subscriptions) == 1 + 2 * len(open_markets)
    assert (FACTORY, indexer.market_created_topic) in subscriptions.values()


def test_backfill_is_idempotent(make_indexer, chain):
    for index in range(3):
        chain.add_market(market_address(index))

    async def scenario():
        indexer = make_indexer()
        await indexer.initialize()
        await indexer.backfill()
        await indexer.backfill()
        count = len(indexer.connection.subscriptions)
        await indexer.cleanup()
        return indexer, count

    indexer, count = asyncio.run(scenario())

    assert len(indexer.registry) == 0  # cleared by cleanup
    assert count == 1 + 2 * 3
    assert len(indexer.store.markets) == 3


def test_reset_rebuilds_everything_in_order(make_indexer, chain):
    markets = [market_address(i) for i in range(4)]
    states = [chain.add_market(address) for address in markets]

    async def scenario():
        indexer = make_indexer()
        await indexer.initialize()
        for state in states:
            state["tradeCount"] = 99
        chain.journal.clear()

        indexer.connection.alive = False
        healthy = await indexer.check_health()

        listeners = len(indexer.registry)
        subscriptions = len(indexer.connection.subscriptions)
        journal = list(chain.journal)
        reconnects = indexer.connection.reconnects
        await indexer.cleanup()
        return indexer, healthy, listeners, subscriptions, journal, reconnects

    indexer, healthy, listeners, subscriptions, journal, reconnects = asyncio.run(scenario())

    assert healthy is False
    assert reconnects == 1
    assert listeners == len(markets)
    assert subscriptions == 1 + 2 * len(markets)
    # rows refreshed from chain during the post-reset backfill
    assert all(indexer.store.markets[a].trade_count == 99 for a in markets)

    reconnect_at = journal.index("reconnect")
    unsubscribes = [i for i, entry in enumerate(journal) if entry[0] == "unsubscribe"]
    subscribes = [i for i, entry in enumerate(journal) if entry[0] == "subscribe"]
    rebinds = [i for i, entry in enumerate(journal) if entry[0] == "contract"]
    backfills = [i for i, entry in enumerate(journal) if entry == "aggregate"]

    assert len(unsubscribes) == 1 + 2 * len(markets)
    assert max(unsubscribes) < reconnect_at
    assert reconnect_at < min(rebinds)
    assert max(rebinds) < min(subscribes)
    assert max(subscribes) < min(backfills)


def test_healthy_feed_is_left_alone(make_indexer, chain):
    chain.add_market(market_address(1))

    async def scenario():
        indexer = make_indexer()
        await indexer.initialize()
        healthy = await indexer.check_health()
        reconnects = indexer.connection.reconnects
        await indexer.cleanup()
        return healthy, reconnects

    healthy, reconnects = asyncio.run(scenario())

    assert healthy is True
    assert reconnects == 0


def test_failed_reset_is_retried_on_next_probe(make_indexer, chain):
    chain.add_market(market_address(1))

    async def scenario():
        indexer = make_indexer()
        await indexer.initialize()
        indexer.connection.alive = False
        chain.broken = True
        first = await indexer.check_health()
        chain.broken = False
        indexer.connection.alive = False
        second = await indexer.check_health()
        listeners = len(indexer.registry)
        await indexer.cleanup()
        return first, second, listeners, indexer.connection.reconnects

    first, second, listeners, reconnects = asyncio.run(scenario())

    assert first is False
    assert second is False
    assert reconnects == 2
    assert listeners == 1


def test_market_created_notification_indexes_and_subscribes(make_indexer, chain):
    chain.add_market(market_address(1))

    async def scenario():
        indexer = make_indexer()
        await indexer.initialize()
        new_market = market_address(2)
        chain.add_market(new_market, question="Brand new?")
        indexer.connection.inbox.put_nowait(
            (indexer._factory_subscription_id, {"args": {"market": new_market.upper().replace("0X", "0x")}})
        )
        await settle()
        active = sorted(indexer.registry.active_markets())
        await indexer.cleanup()
        return indexer, active

    indexer, active = asyncio.run(scenario())

    assert active == [market_address(1), market_address(2)]
    assert indexer.store.markets[market_address(2)].question == "Brand new?"


def test_listener_failure_requests_health_check(make_indexer, chain):
    chain.add_market(market_address(1))

    async def scenario():
        indexer = make_indexer()

        async def broken_stream():
            raise ConnectionError("socket closed")
            yield  # pragma: no cover

        indexer.connection.messages = broken_stream
        await indexer.initialize()
        await settle()
        requested = indexer._health_check_requested.is_set()
        await indexer.cleanup()
        return requested

    assert asyncio.run(scenario()) is True


def test_rejected_subscription_during_reset_is_rebuilt_on_next_probe(make_indexer, chain):
    markets = [market_address(i) for i in range(3)]
    for address in markets:
        chain.add_market(address)

    async def scenario():
        indexer = make_indexer()
        await indexer.initialize()
        connection = indexer.connection
        subscribe_logs = connection.subscribe_logs
        rejecting = {"on": True}

        async def flaky_subscribe(address, topic):
            if rejecting["on"] and address.lower() == markets[0]:
                raise ValueError("subscription limit reached")
            return await subscribe_logs(address, topic)

        connection.subscribe_logs = flaky_subscribe
        connection.alive = False
        first = await indexer.check_health()
        partial = sorted(indexer.registry.active_markets())

        rejecting["on"] = False
        # the socket itself is fine now, the rebuild is not
        second = await indexer.check_health()
        listener = indexer._listener
        listening = listener is not None and not listener.done()
        active = sorted(indexer.registry.active_markets())
        third = await indexer.check_health()
        await indexer.cleanup()
        return first, partial, second, listening, active, third, connection.reconnects

    first, partial, second, listening, active, third, reconnects = asyncio.run(scenario())

    assert first is False
    assert partial == markets[1:]
    assert second is False
    assert listening is True
    assert active == markets
    assert third is True
    assert reconnects == 2


def test_reset_interrupted_by_backfill_failure_is_finished_later(make_indexer, chain):
    markets = [market_address(i) for i in range(2)]
    for address in markets:
        chain.add_market(address)

    async def scenario():
        indexer = make_indexer()
        await indexer.initialize()
        indexer.connection.alive = False
        chain.broken = True
        first = await indexer.check_health()
        listening_after_failure = indexer._listener is not None

        chain.broken = False
        # reconnect already restored liveness; only the rebuild is pending
        second = await indexer.check_health()
        active = sorted(indexer.registry.active_markets())
        third = await indexer.check_health()
        await indexer.cleanup()
        return first, listening_after_failure, second, active, third

    first, listening_after_failure, second, active, third = asyncio.run(scenario())

    assert first is False
    assert listening_after_failure is True
    assert second is False
    assert active == markets
    assert third is True


def test_markets_resolved_while_offline_are_dropped_on_reset(make_indexer, chain):
    open_market = market_address(1)
    closing_market = market_address(2)
    chain.add_market(open_market)
    state = chain.add_market(closing_market)

    async def scenario():
        indexer = make_indexer()
        await indexer.initialize()
        state.update(resolved=True, outcome=1)
        indexer.connection.alive = False
        await indexer.check_health()
        active = indexer.registry.active_markets()
        subscribed = sorted(address for address, _ in indexer.connection.subscriptions.values())
        await indexer.cleanup()
        return indexer.store, active, subscribed

    store, active, subscribed = asyncio.run(scenario())

    assert store.markets[closing_market].resolved is True
    assert active == [open_market]
    assert subscribed == sorted([FACTORY, open_market, open_market])
