import asyncio
import re

import pytest

from duet.errors import (
    AlreadyPaired, AlreadyProcessed, CodeGenerationExhausted, DuplicatePendingRequest, Forbidden, NotFound,
    NotFoundOrAlreadyDeleted, QuotaExceeded, SelfPairing,
)
from duet.models import PairingStatus
from duet.services import pairing as pairing_svc


async def test_request_issues_partner_code(db, make_account):
    a = await make_account()
    pc = await pairing_svc.request_pairing(db, a.id)
    assert re.fullmatch(r"[A-Z0-9]{6}", pc.code)
    p = await pairing_svc.get_pairing(db, pc.pairing_id)
    assert p.status == PairingStatus.pending
    assert p.partner_id is None


async def test_one_pending_request_at_a_time(db, make_account):
    a = await make_account()
    await pairing_svc.request_pairing(db, a.id)
    with pytest.raises(DuplicatePendingRequest):
        await pairing_svc.request_pairing(db, a.id)


async def test_accept_binds_partner_and_clears_code(db, make_account):
    a = await make_account(first_name="Ana")
    b = await make_account(first_name="Ben")
    pc = await pairing_svc.request_pairing(db, a.id)

    p = await pairing_svc.accept_by_code(db, b.id, f"  {pc.code.lower()} ")
    assert p.status == PairingStatus.accepted
    assert p.partner_id == b.id
    assert p.code is None

    seen_by_b = pairing_svc.summarize(p, b.id)
    assert seen_by_b["partner"]["first_name"] == "Ana"
    assert seen_by_b["is_requester"] is False
    assert pairing_svc.summarize(p, a.id)["partner"]["first_name"] == "Ben"

    # code is single-use
    c = await make_account()
    with pytest.raises(NotFound):
        await pairing_svc.accept_by_code(db, c.id, pc.code)


async def test_cannot_accept_own_code(db, make_account):
    a = await make_account()
    pc = await pairing_svc.request_pairing(db, a.id)
    with pytest.raises(SelfPairing):
        await pairing_svc.accept_by_code(db, a.id, pc.code)


async def test_unknown_code(db, make_account):
    a = await make_account()
    with pytest.raises(NotFound):
        await pairing_svc.accept_by_code(db, a.id, "ZZZZZZ")


async def test_quota_on_request_and_accept(db, make_account, make_pairing):
    a = await make_account()
    b = await make_account()
    c = await make_account()
    await make_pairing(b, c)

    with pytest.raises(QuotaExceeded):
        await pairing_svc.request_pairing(db, b.id)

    pc = await pairing_svc.request_pairing(db, a.id)
    with pytest.raises(QuotaExceeded):
        await pairing_svc.accept_by_code(db, c.id, pc.code)


async def test_requester_cap_checked_on_accept(db, make_account):
    a = await make_account()
    b = await make_account()
    c = await make_account()
    a_code = await pairing_svc.request_pairing(db, a.id)
    b_code = await pairing_svc.request_pairing(db, b.id)

    # a fills its only slot through someone else's code
    await pairing_svc.accept_by_code(db, a.id, b_code.code)

    with pytest.raises(QuotaExceeded):
        await pairing_svc.accept_by_code(db, c.id, a_code.code)
    assert await pairing_svc.count_accepted_pairings(db, a.id) == 1
    assert await pairing_svc.count_accepted_pairings(db, c.id) == 0


async def test_existing_partners_cannot_pair_again(db, make_account, make_pairing):
    a = await make_account(max_pairings=2)
    b = await make_account(max_pairings=2)
    await make_pairing(a, b)
    pc = await pairing_svc.request_pairing(db, a.id)

    with pytest.raises(AlreadyPaired):
        await pairing_svc.accept_by_code(db, b.id, pc.code)
    assert await pairing_svc.count_accepted_pairings(db, b.id) == 1


async def test_concurrent_accept_has_one_winner(db, make_account, session_maker):
    a = await make_account()
    b = await make_account()
    c = await make_account()
    pc = await pairing_svc.request_pairing(db, a.id)

    async def accept(account_id):
        async with session_maker() as s:
            p = await pairing_svc.accept_by_code(s, account_id, pc.code)
            return p.partner_id

    results = await asyncio.gather(accept(b.id), accept(c.id), return_exceptions=True)
    winners = [r for r in results if isinstance(r, int)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1 and isinstance(losers[0], NotFound)

    db.expire_all()
    p = await pairing_svc.get_pairing(db, pc.pairing_id)
    assert p.partner_id == winners[0]
    assert await pairing_svc.count_accepted_pairings(db, a.id) == 1


async def test_reject(db, make_account):
    a = await make_account()
    outsider = await make_account()
    pc = await pairing_svc.request_pairing(db, a.id)

    with pytest.raises(Forbidden):
        await pairing_svc.reject_pairing(db, outsider.id, pc.pairing_id)

    p = await pairing_svc.reject_pairing(db, a.id, pc.pairing_id)
    assert p.status == PairingStatus.rejected
    assert p.code is None
    with pytest.raises(AlreadyProcessed):
        await pairing_svc.reject_pairing(db, a.id, pc.pairing_id)

    # a rejected request no longer blocks a new one
    assert await pairing_svc.request_pairing(db, a.id)


async def test_soft_delete_and_restore(db, make_account, make_pairing):
    a = await make_account()
    b = await make_account()
    pairing_id = (await make_pairing(a, b)).id

    deleted = await pairing_svc.soft_delete_pairing(db, pairing_id)
    assert deleted.deleted_at is not None
    with pytest.raises(NotFound):
        await pairing_svc.get_pairing(db, pairing_id)
    assert await pairing_svc.list_pairings(db, a.id) == []
    assert await pairing_svc.count_accepted_pairings(db, a.id) == 0
    with pytest.raises(NotFoundOrAlreadyDeleted):
        await pairing_svc.soft_delete_pairing(db, pairing_id)

    restored = await pairing_svc.restore_pairing(db, pairing_id)
    assert restored.deleted_at is None
    assert restored.status == PairingStatus.accepted
    with pytest.raises(NotFound):
        await pairing_svc.restore_pairing(db, pairing_id)


async def test_cascade_soft_delete_counts_rows(db, make_account, make_pairing):
    a = await make_account(max_pairings=3)
    b = await make_account()
    c = await make_account()
    await make_pairing(a, b)
    await make_pairing(c, a)
    await pairing_svc.request_pairing(db, a.id)

    assert await pairing_svc.cascade_soft_delete_for_account(db, a.id) == 3
    assert await pairing_svc.list_pairings(db, a.id) == []
    assert len(await pairing_svc.list_pairings_including_deleted(db, a.id)) == 3
    assert await pairing_svc.cascade_soft_delete_for_account(db, a.id) == 0


async def test_stats(db, make_account, make_pairing):
    a = await make_account(max_pairings=2)
    b = await make_account()
    await make_pairing(a, b)
    await pairing_svc.request_pairing(db, a.id)

    stats = await pairing_svc.pairing_stats(db, a.id)
    assert stats == {"max_pairings": 2, "current_pairings": 1, "available_slots": 1, "pending_requests": 1}


async def test_code_generation_gives_up_after_collisions(db, make_account, monkeypatch):
    a = await make_account()
    b = await make_account()
    monkeypatch.setattr(pairing_svc, "_partner_code", lambda: "SAME01")
    await pairing_svc.request_pairing(db, a.id)
    with pytest.raises(CodeGenerationExhausted):
        await pairing_svc.request_pairing(db, b.id)
