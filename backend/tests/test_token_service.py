from datetime import timedelta

from sqlalchemy import update

from tourney.core.csrf import verify_csrf_token
from tourney.core.security import hash_token, utcnow, verify_access_token
from tourney.models.security import RefreshToken
from tourney.services.token_service import token_service

from conftest import make_user


def _record(db, raw_token):
    return db.query(RefreshToken).filter(RefreshToken.token_hash == hash_token(raw_token)).first()


def test_start_session_issues_all_credentials(db):
    user = make_user(db, role="organizer")
    session = token_service.start_session(db, user, user_agent="pytest", ip_address="10.0.0.1")

    claims = verify_access_token(session.access_token)
    assert claims["id"] == user.id
    assert claims["role"] == "organizer"
    assert verify_csrf_token(session.csrf_token, user.id)

    record = _record(db, session.refresh_token)
    assert record is not None
    assert record.token_hash != session.refresh_token
    assert record.revoked is False
    assert record.user_agent == "pytest"


def test_remember_me_extends_refresh_lifetime(db):
    user = make_user(db)
    short = token_service.start_session(db, user)
    long = token_service.start_session(db, user, remember_me=True)
    assert long.refresh_expires_at - short.refresh_expires_at > timedelta(days=20)
    assert long.remember_me is True


def test_rotation_replaces_token_within_the_same_chain(db):
    user = make_user(db)
    first = token_service.start_session(db, user)

    outcome = token_service.rotate_refresh_token(db, hash_token(first.refresh_token))
    assert outcome.ok
    assert outcome.status == "rotated"
    second = outcome.session
    assert second.refresh_token != first.refresh_token

    old = _record(db, first.refresh_token)
    new = _record(db, second.refresh_token)
    db.refresh(old)
    assert old.revoked is True
    assert old.replaced_by_id == new.id
    assert new.session_id == old.session_id
    assert new.revoked is False


def test_replayed_token_revokes_the_whole_chain(db):
    user = make_user(db)
    other_device = token_service.start_session(db, user)
    first = token_service.start_session(db, user)
    second = token_service.rotate_refresh_token(db, hash_token(first.refresh_token)).session

    replay = token_service.rotate_refresh_token(db, hash_token(first.refresh_token))
    assert replay.status == "compromised"
    assert replay.session is None

    current = _record(db, second.refresh_token)
    db.refresh(current)
    assert current.revoked is True
    assert token_service.rotate_refresh_token(db, hash_token(second.refresh_token)).status == "compromised"

    # Other login sessions are untouched.
    assert token_service.rotate_refresh_token(db, hash_token(other_device.refresh_token)).ok


def test_unknown_token_is_rejected(db):
    make_user(db)
    assert token_service.rotate_refresh_token(db, hash_token("never-issued")).status == "compromised"


def test_expired_token_is_rejected_and_revoked(db):
    user = make_user(db)
    session = token_service.start_session(db, user)
    record = _record(db, session.refresh_token)
    record.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()

    assert token_service.rotate_refresh_token(db, hash_token(session.refresh_token)).status == "expired"
    db.refresh(record)
    assert record.revoked is True


def test_inactive_user_cannot_refresh(db):
    user = make_user(db)
    session = token_service.start_session(db, user)
    user.is_active = False
    db.commit()

    assert token_service.rotate_refresh_token(db, hash_token(session.refresh_token)).status == "invalid"


def test_revoke_is_idempotent(db):
    user = make_user(db)
    session = token_service.start_session(db, user)

    assert token_service.revoke_refresh_token(db, session.refresh_token) is True
    assert token_service.revoke_refresh_token(db, session.refresh_token) is True
    assert token_service.revoke_refresh_token(db, None) is False
    assert token_service.revoke_refresh_token(db, "unknown") is False
    assert _record(db, session.refresh_token).revoked is True


def test_revoke_all_for_user(db):
    user = make_user(db)
    other = make_user(db, email="other@example.com", username="other")
    token_service.start_session(db, user)
    token_service.start_session(db, user)
    survivor = token_service.start_session(db, other)

    assert token_service.revoke_all_for_user(db, user.id) == 2
    assert token_service.rotate_refresh_token(db, hash_token(survivor.refresh_token)).ok


def test_purge_removes_old_expired_and_revoked_records(db):
    user = make_user(db)
    stale = token_service.start_session(db, user)
    revoked = token_service.start_session(db, user)
    live = token_service.start_session(db, user)

    long_ago = utcnow() - timedelta(days=60)
    stale_record = _record(db, stale.refresh_token)
    stale_record.expires_at = long_ago
    revoked_record = _record(db, revoked.refresh_token)
    revoked_record.revoked = True
    revoked_record.revoked_at = long_ago
    db.commit()

    assert token_service.purge_expired(db) == 2
    assert _record(db, stale.refresh_token) is None
    assert _record(db, revoked.refresh_token) is None
    assert _record(db, live.refresh_token) is not None


def test_replay_of_an_old_token_after_many_rotations_revokes_the_session(db):
    user = make_user(db)
    first = token_service.start_session(db, user)
    session = first
    for _ in range(8):
        session = token_service.rotate_refresh_token(db, hash_token(session.refresh_token)).session

    replay = token_service.rotate_refresh_token(db, hash_token(first.refresh_token))
    assert replay.status == "compromised"

    current = token_service.rotate_refresh_token(db, hash_token(session.refresh_token))
    assert current.status == "compromised"
    session_id = _record(db, first.refresh_token).session_id
    assert db.query(RefreshToken).filter(RefreshToken.session_id == session_id).count() == 9


def test_rotation_that_loses_the_race_revokes_the_session(db, session_factory, monkeypatch):
    from tourney.services import token_service as token_service_module

    user = make_user(db)
    session = token_service.start_session(db, user)
    session_id = _record(db, session.refresh_token).session_id
    real_issue = token_service_module.issue_refresh_token

    def issue_after_concurrent_rotation():
        # Another request claims the record between our read and our update.
        other = session_factory()
        try:
            other.execute(
                update(RefreshToken)
                .where(RefreshToken.token_hash == hash_token(session.refresh_token))
                .values(revoked=True, revoked_at=utcnow())
            )
            other.commit()
        finally:
            other.close()
        return real_issue()

    monkeypatch.setattr(token_service_module, "issue_refresh_token", issue_after_concurrent_rotation)
    outcome = token_service.rotate_refresh_token(db, hash_token(session.refresh_token))

    assert outcome.status == "compromised"
    assert outcome.session is None
    db.expire_all()
    records = db.query(RefreshToken).filter(RefreshToken.session_id == session_id).all()
    assert len(records) == 1
    assert all(record.revoked for record in records)
    assert records[0].replaced_by_id is None
