import pytest

from duet.errors import (
    AccountLocked, EmailTaken, InvalidCredentials, InvalidOrExpiredToken, NotFound, NotFoundOrAlreadyDeleted,
)
from duet.schemas import AccountCreate, AccountUpdate
from duet.services import accounts as accounts_svc
from duet.services import pairing as pairing_svc


async def test_register_normalises_email(db):
    acct = await accounts_svc.register(db, AccountCreate(email="Ana@Example.COM", password="long-enough"))
    assert acct.email == "ana@example.com"
    assert acct.hashed_password != "long-enough"
    with pytest.raises(EmailTaken):
        await accounts_svc.register(db, AccountCreate(email="ana@example.com", password="long-enough"))


async def test_login_lockout_flow(db, make_account, guard, clock):
    await make_account(email="ana@example.com", password="right-password")

    for _ in range(4):
        with pytest.raises(InvalidCredentials):
            await accounts_svc.authenticate(db, guard, "ana@example.com", "wrong", "1.2.3.4")
    with pytest.raises(AccountLocked) as exc:
        await accounts_svc.authenticate(db, guard, "ana@example.com", "wrong", "1.2.3.4")
    assert exc.value.retry_after == 300

    # correct password is refused while locked
    with pytest.raises(AccountLocked):
        await accounts_svc.authenticate(db, guard, "ana@example.com", "right-password", "1.2.3.4")

    clock.advance(301)
    acct = await accounts_svc.authenticate(db, guard, "ANA@example.com", "right-password", "1.2.3.4")
    assert acct.email == "ana@example.com"
    assert guard.lockout.failure_count("ana@example.com") == 0


async def test_success_clears_failure_history(db, make_account, guard):
    await make_account(email="ben@example.com", password="right-password")
    for _ in range(4):
        with pytest.raises(InvalidCredentials):
            await accounts_svc.authenticate(db, guard, "ben@example.com", "nope", "ip")
    await accounts_svc.authenticate(db, guard, "ben@example.com", "right-password", "ip")
    with pytest.raises(InvalidCredentials):
        await accounts_svc.authenticate(db, guard, "ben@example.com", "nope", "ip")


async def test_unknown_email_looks_like_bad_password(db, guard):
    with pytest.raises(InvalidCredentials) as exc:
        await accounts_svc.authenticate(db, guard, "ghost@example.com", "whatever", "ip")
    assert exc.value.detail == InvalidCredentials.default_detail


async def test_update_account_partial(db, make_account):
    a = await make_account(first_name="Ana")
    updated = await accounts_svc.update_account(db, a, AccountUpdate(partner_name="Ben"))
    assert (updated.first_name, updated.partner_name) == ("Ana", "Ben")


async def test_tombstone_cascades(db, make_account, make_pairing, tokens):
    a = await make_account(max_pairings=2)
    account_id = a.id
    b = await make_account()
    accepted = await make_pairing(a, b)
    pending = await pairing_svc.request_pairing(db, a.id)
    pair = await tokens.issue_tokens(db, a)

    report = await accounts_svc.tombstone_account(db, tokens, account_id)
    assert (report.pairings_deleted, report.sessions_revoked, report.errors) == (2, 1, [])

    with pytest.raises(NotFound):
        await pairing_svc.get_pairing(db, accepted.id)
    with pytest.raises(NotFound):
        await pairing_svc.get_pairing(db, pending.pairing_id)
    db.expire_all()
    with pytest.raises(InvalidOrExpiredToken):
        await tokens.refresh(db, pair.refresh_token)
    with pytest.raises(NotFoundOrAlreadyDeleted):
        await accounts_svc.tombstone_account(db, tokens, account_id)
