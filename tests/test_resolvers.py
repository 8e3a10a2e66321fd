import pytest

from holder_ledger.errors import DataError
from holder_ledger.profiles import attribute_tier, scalar_tier
from holder_ledger.resolvers import RewardPools, ShareRewardResolver, TierResolver, from_wei

from conftest import A, B, WEI, FakeChain


def test_tiers_are_fetched_once_then_served_from_cache(profile, store):
    chain = FakeChain(tiers={1: 1, 2: 2, 3: 1})
    resolver = TierResolver(profile, chain, store)

    assert resolver.resolve_tiers([3, 1, 2]) == {1: 1, 2: 2, 3: 1}
    assert chain.multicalls == [["getNftTier"] * 3]

    assert resolver.resolve_tiers([1, 2, 3]) == {1: 1, 2: 2, 3: 1}
    assert len(chain.multicalls) == 1
    assert set(store.get("testnft_tiers")) == {"1", "2", "3"}


def test_only_missing_tokens_are_fetched(profile, store):
    chain = FakeChain(tiers={1: 1, 2: 2})
    resolver = TierResolver(profile, chain, store)
    resolver.resolve_tiers([1])

    resolver.resolve_tiers([1, 2])

    assert chain.multicalls[-1] == ["getNftTier"]


def test_invalidated_tokens_are_refetched(profile, store):
    chain = FakeChain(tiers={1: 1})
    resolver = TierResolver(profile, chain, store)
    resolver.resolve_tiers([1])
    chain.tiers[1] = 2

    assert resolver.resolve_tiers([1], invalidate=[1]) == {1: 2}


def test_expired_entries_are_refetched(profile, store):
    now = [1000.0]
    chain = FakeChain(tiers={1: 1})
    resolver = TierResolver(profile, chain, store, ttl=60, clock=lambda: now[0])
    resolver.resolve_tiers([1])

    now[0] += 61
    resolver.resolve_tiers([1])

    assert len(chain.multicalls) == 2


def test_out_of_range_tier_is_unresolved(profile, store):
    chain = FakeChain(tiers={1: 1, 2: 9})
    resolver = TierResolver(profile, chain, store)

    assert resolver.resolve_tiers([1, 2]) == {1: 1, 2: 0}
    assert len(resolver.anomalies) == 1
    assert resolver.anomalies[0]["tokenId"] == 2
    assert "Invalid tier 9" in resolver.anomalies[0]["error"]
    assert "2" not in store.get("testnft_tiers")


def test_failed_lookup_is_unresolved_and_retried_next_time(profile, store):
    chain = FakeChain(tiers={1: 1})
    resolver = TierResolver(profile, chain, store)

    assert resolver.resolve_tiers([1, 5]) == {1: 1, 5: 0}
    assert resolver.anomalies[0]["phase"] == "fetch_tier"

    chain.tiers[5] = 2
    assert resolver.resolve_tiers([1, 5]) == {1: 1, 5: 2}


def test_progress_reported_per_chunk(profile, store):
    chain = FakeChain(tiers={t: 1 for t in range(1, 451)})
    seen = []

    TierResolver(profile, chain, store).resolve_tiers(range(1, 451), on_progress=lambda done, total: seen.append((done, total)))

    assert seen == [(200, 450), (400, 450), (450, 450)]


def test_attribute_tier_keeps_rarity_class(yield_profile, store):
    chain = FakeChain(tiers={1: (501, 2, 1), 2: (77, 1, 7)})
    resolver = TierResolver(yield_profile, chain, store)

    assert resolver.resolve_tiers([1, 2]) == {1: 2, 2: 1}
    assert resolver.rarity_classes([1, 2]) == {1: 1}
    assert [a["phase"] for a in resolver.anomalies] == ["fetch_rarity"]


def test_tier_decoders_reject_malformed_values():
    assert scalar_tier(3) == (3, None)
    assert attribute_tier([10, 4, 2]) == (4, 2)
    with pytest.raises(DataError):
        scalar_tier("3")
    with pytest.raises(DataError):
        attribute_tier((1, 2))


def test_reward_pools_split_pending_by_share():
    pools = RewardPools(total_shares=100.0, to_distribute_day8=10.0, to_distribute_day28=20.0, to_distribute_day90=40.0)
    assert pools.pending(25.0) == {8: 2.5, 28: 5.0, 90: 10.0}
    assert RewardPools().pending(25.0) == {8: 0.0, 28: 0.0, 90: 0.0}


def test_resolve_pools_converts_from_wei(yield_profile):
    chain = FakeChain()
    chain.total_shares = 1000 * WEI
    chain.to_distribute = {0: 8 * WEI, 1: 28 * WEI, 2: 90 * WEI}

    pools = ShareRewardResolver(yield_profile, chain).resolve_pools()

    assert pools == RewardPools(1000.0, 8.0, 28.0, 90.0)


def test_resolve_many_sums_records_per_wallet(yield_profile):
    chain = FakeChain()
    chain.records = {1: (5 * WEI, 2 * WEI), 2: (3 * WEI, WEI), 3: (WEI, 0)}
    chain.claimable = {1: WEI // 2, 2: WEI // 2, 3: 2 * WEI}
    resolver = ShareRewardResolver(yield_profile, chain)

    rewards = resolver.resolve_many({A: [2, 1], B: [3]})

    assert rewards[A].shares == 8.0 and rewards[A].locked_amount == 3.0 and rewards[A].claimable == 1.0
    assert rewards[B].shares == 1.0 and rewards[B].claimable == 2.0
    assert chain.multicalls == [["userRecords", "userRecords", "batchClaimableAmount", "userRecords", "batchClaimableAmount"]]
    assert resolver.anomalies == []


def test_failed_record_is_anomaly_not_abort(yield_profile):
    chain = FakeChain()
    chain.records = {1: (5 * WEI, 0)}
    chain.fail_tokens = {2}
    resolver = ShareRewardResolver(yield_profile, chain)

    reward = resolver.resolve_rewards([1, 2], A)

    assert reward.shares == 5.0
    assert [(a["phase"], a["tokenId"]) for a in resolver.anomalies] == [("fetch_records", 2)]


def test_from_wei_handles_missing_values():
    assert from_wei(None) == 0.0
    assert from_wei(WEI * 3 // 2) == 1.5
