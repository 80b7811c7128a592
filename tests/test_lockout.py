"""Failed-login counter and timed account lock."""

from estatevault.storage.models import AuditAction, Severity


async def test_locks_on_threshold_and_alerts(make_account, auth_service, store, delivery, clock):
    account = make_account()
    lockout = auth_service.lockout
    for _ in range(4):
        state = await lockout.record_failure(account, ip_address="198.51.100.7")
        assert not state.locked
    state = await lockout.record_failure(account, ip_address="198.51.100.7")

    assert state.just_locked
    assert state.failed_count == 5
    assert state.locked_until == clock.now + lockout.lockout
    assert lockout.is_locked(store.get_account(account.id))
    assert lockout.remaining_minutes(account) == 30

    events = store.list_audit_events(account.id, actions=[AuditAction.ACCOUNT_LOCKED])
    assert len(events) == 1
    assert events[0].severity == Severity.CRITICAL
    assert delivery.alerts[-1][1].title == "Account locked"


async def test_lock_expires_and_counter_restarts(make_account, auth_service, store, clock):
    account = make_account()
    lockout = auth_service.lockout
    for _ in range(5):
        await lockout.record_failure(account)
    clock.advance(minutes=31)
    account = store.get_account(account.id)
    assert not lockout.is_locked(account)

    state = await lockout.record_failure(account)
    assert state.failed_count == 1
    assert not state.locked


async def test_success_resets_counter(make_account, auth_service, store):
    account = make_account()
    await auth_service.lockout.record_failure(account)
    await auth_service.lockout.record_failure(account)
    auth_service.lockout.record_success(account)
    assert store.get_account(account.id).failed_login_count == 0


async def test_admin_unlock_clears_lock(make_account, auth_service, store):
    account = make_account()
    for _ in range(5):
        await auth_service.lockout.record_failure(account)
    auth_service.lockout.unlock(account, performed_by="admin-7")

    stored = store.get_account(account.id)
    assert stored.locked_until is None
    assert stored.failed_login_count == 0
    unlocked = store.list_audit_events(account.id, actions=[AuditAction.ACCOUNT_UNLOCKED])
    assert unlocked[0].performed_by == "admin-7"


def test_remaining_is_zero_when_unlocked(make_account, auth_service):
    account = make_account()
    assert auth_service.lockout.remaining_minutes(account) == 0
