import pytest

from holder_ledger.events import Transfer
from holder_ledger.ledger import Holder, Ledger, LedgerBuilder, is_valid_ledger
from holder_ledger.resolvers import Reward, RewardPools

from conftest import A, B, C, check_consistency

TIERS = {1: 1, 2: 2, 3: 1}


def by_wallet(ledger):
    return {h.wallet: h for h in ledger.holders}


def test_full_build_groups_tokens_by_owner(profile):
    ledger = LedgerBuilder(profile).build_full({A: [1, 2], B: [3]}, TIERS, timestamp=1)
    holders = by_wallet(ledger)

    assert (holders[A].total, holders[A].tiers, holders[A].multiplier_sum) == (2, [1, 1], 110)
    assert (holders[B].total, holders[B].tiers, holders[B].multiplier_sum) == (1, [1, 0], 10)
    assert [h.wallet for h in ledger.holders] == [A, B]
    check_consistency(ledger)


def test_percentages_share_the_multiplier_pool(profile):
    ledger = LedgerBuilder(profile).build_full({A: [1, 2], B: [3]}, TIERS)
    holders = by_wallet(ledger)

    assert holders[A].percentage == pytest.approx(110 / 120 * 100)
    assert sum(h.percentage for h in ledger.holders) == pytest.approx(100)


def test_transfer_moves_token_and_swaps_ranks(profile):
    builder = LedgerBuilder(profile)
    ledger = builder.build_full({A: [1, 2], B: [3]}, TIERS)

    updated = builder.apply_incremental(ledger, [], [Transfer(2, A, B, 10)], TIERS)
    holders = by_wallet(updated)

    assert (holders[A].total, holders[A].tiers, holders[A].multiplier_sum) == (1, [1, 0], 10)
    assert (holders[B].total, holders[B].tiers, holders[B].multiplier_sum) == (2, [1, 1], 110)
    assert [h.wallet for h in updated.holders] == [B, A]
    check_consistency(updated)


def test_incremental_does_not_mutate_previous_ledger(profile):
    builder = LedgerBuilder(profile)
    ledger = builder.build_full({A: [1, 2], B: [3]}, TIERS)

    builder.apply_incremental(ledger, [], [Transfer(2, A, B, 10)], TIERS)

    assert by_wallet(ledger)[A].token_ids == [1, 2]


def test_incremental_matches_full_rebuild(profile):
    builder = LedgerBuilder(profile)
    tiers = {1: 1, 2: 2, 3: 1, 4: 2, 5: 1}
    ledger = builder.build_full({A: [1, 2], B: [3, 4], C: [5]}, tiers, timestamp=1)
    transfers = [Transfer(4, B, A, 11), Transfer(1, A, C, 12), Transfer(4, A, C, 13, 1)]

    incremental = builder.apply_incremental(ledger, [3], transfers, tiers, timestamp=2)
    full = builder.build_full({A: [2], C: [1, 4, 5]}, tiers, total_burned=1, timestamp=2)

    assert [h.to_dict() for h in incremental.holders] == [h.to_dict() for h in full.holders]
    assert incremental.total_burned == full.total_burned == 1


def test_burn_removes_token_and_empty_holder(profile):
    builder = LedgerBuilder(profile)
    ledger = builder.build_full({A: [1, 2], B: [3]}, TIERS, total_burned=4)

    updated = builder.apply_incremental(ledger, [3], [], TIERS)

    assert [h.wallet for h in updated.holders] == [A]
    assert updated.total_burned == 5


def test_transfer_then_burn_in_same_batch(profile):
    builder = LedgerBuilder(profile)
    ledger = builder.build_full({A: [1, 2], B: [3]}, TIERS)

    updated = builder.apply_incremental(ledger, [2], [Transfer(2, A, C, 10)], TIERS)

    assert C not in by_wallet(updated)
    assert by_wallet(updated)[A].token_ids == [1]
    check_consistency(updated)


def test_tokens_without_tier_are_excluded(profile):
    ledger = LedgerBuilder(profile).build_full({A: [1, 2], B: [7]}, {1: 1, 2: 2, 7: 0})

    assert [h.wallet for h in ledger.holders] == [A]
    assert ledger.unresolved == [7]
    check_consistency(ledger)


def test_ties_break_on_total_then_wallet(profile):
    tiers = {1: 2, 2: 1, 3: 1, 4: 1, 5: 1, 6: 1, 7: 1, 8: 1, 9: 1, 10: 1, 11: 1, 12: 1}
    owners = {C: [1], B: [2, 3, 4, 5, 6, 7, 8, 9, 10, 11], A: [12]}
    ledger = LedgerBuilder(profile).build_full(owners, tiers)

    # B holds ten commons (100), C one rare (100): more tokens wins the tie
    assert [h.wallet for h in ledger.holders] == [B, C, A]

    ledger = LedgerBuilder(profile).build_full({B: [2], A: [3]}, tiers)
    assert [h.wallet for h in ledger.holders] == [A, B]


def test_many_holders_rank_by_non_increasing_multiplier_sum(profile):
    wallets = ["0x" + f"{n:040x}" for n in range(1, 31)]
    owners = {w: [] for w in wallets}
    tiers = {}
    for token_id in range(1, 200):
        owners[wallets[(token_id * 7) % 30]].append(token_id)
        tiers[token_id] = 2 if token_id % 5 == 0 else 1

    ledger = LedgerBuilder(profile).build_full(owners, tiers)
    sums = [h.multiplier_sum for h in ledger.holders]

    assert len(ledger.holders) == 30
    assert sums == sorted(sums, reverse=True)
    check_consistency(ledger)


def test_yield_holders_rank_by_shares(yield_profile):
    pools = RewardPools(total_shares=10.0, to_distribute_day8=1.0, to_distribute_day28=2.0, to_distribute_day90=4.0)
    rewards = {A: Reward(shares=2.0, locked_amount=1.0), B: Reward(shares=8.0, claimable=0.5)}

    ledger = LedgerBuilder(yield_profile).build_full({A: [1, 2], B: [3]}, {1: 2, 2: 2, 3: 1}, rewards, pools=pools)
    holders = by_wallet(ledger)

    assert [h.wallet for h in ledger.holders] == [B, A]
    assert holders[B].pending_day90 == pytest.approx(3.2)
    assert holders[A].pending_day8 == pytest.approx(0.2)
    assert holders[B].claimable_rewards == 0.5
    assert holders[A].multiplier_sum == pytest.approx(2.04)
    assert set(holders[A].to_dict()) >= {"shares", "lockedAmount", "pendingDay8", "pendingDay28", "pendingDay90"}


def test_non_yield_holder_dict_has_no_share_fields(profile):
    ledger = LedgerBuilder(profile).build_full({A: [1]}, TIERS)
    assert "shares" not in ledger.holders[0].to_dict()


def test_summarize_counts_live_minted_and_tiers(profile):
    builder = LedgerBuilder(profile)
    ledger = builder.build_full({A: [1, 2], B: [3]}, TIERS, total_burned=2)

    metrics = builder.summarize(ledger, unresolved=1)

    assert metrics["totalLive"] == 3
    assert metrics["totalMinted"] == 6
    assert metrics["tierDistribution"] == [2, 1]
    assert metrics["multiplierPool"] == 120
    assert metrics["totalHolders"] == 2


def test_ledger_dict_round_trip(profile):
    ledger = LedgerBuilder(profile).build_full({A: [1, 2], B: [3]}, TIERS, total_burned=3, timestamp=42)
    payload = ledger.to_dict()

    assert is_valid_ledger(payload)
    restored = Ledger.from_dict(payload)
    assert restored.owner_map() == {A: [1, 2], B: [3]}
    assert restored.total_burned == 3 and restored.timestamp == 42


@pytest.mark.parametrize("payload", [
    None,
    [],
    {"holders": []},
    {"holders": "x", "totalBurned": 0},
    {"holders": [], "totalBurned": True},
    {"holders": [{"wallet": A, "tokenIds": [1]}], "totalBurned": 0},
])
def test_malformed_ledgers_are_rejected(payload):
    assert not is_valid_ledger(payload)


def test_holder_from_dict_parses_string_ids():
    holder = Holder.from_dict({"wallet": A, "tokenIds": ["1", "2"], "total": 2, "tiers": [2, 0], "multiplierSum": 20})
    assert holder.token_ids == [1, 2]
    assert holder.shares is None
