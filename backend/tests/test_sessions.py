"""Bearer session lifecycle: issue, validate, idle/absolute expiry, revocation."""

from datetime import timedelta

from canteen.models import SessionToken, User
from canteen.services import session_service
from canteen.time_utils import utcnow


def _user(name="sc-admin"):
    return User.query.filter_by(username=name).one()


class TestSessions:

    def test_token_is_stored_hashed(self, theater):
        session, token = session_service.create_session(_user())
        assert session.token_hash == session_service.hash_token(token)
        assert token not in session.token_hash

        context = session_service.validate_session(token)
        assert context.user.username == "sc-admin"
        assert context.theater_id == theater.id
        assert context.is_admin is False

    def test_idle_session_is_revoked(self, theater, db_session):
        session, token = session_service.create_session(_user())
        session.last_used_at = utcnow() - timedelta(hours=13)
        db_session.commit()

        assert session_service.validate_session(token) is None
        assert db_session.get(SessionToken, session.id).is_revoked is True

    def test_use_refreshes_idle_clock(self, theater, db_session):
        session, token = session_service.create_session(_user())
        session.last_used_at = utcnow() - timedelta(hours=11)
        db_session.commit()

        assert session_service.validate_session(token) is not None
        assert utcnow() - session.last_used_at < timedelta(minutes=1)

    def test_absolute_expiry(self, theater, db_session):
        session, token = session_service.create_session(_user())
        session.expires_at = utcnow() - timedelta(seconds=1)
        db_session.commit()
        assert session_service.validate_session(token) is None

    def test_deactivated_user_loses_session(self, theater, db_session):
        user = _user()
        _session, token = session_service.create_session(user)
        user.is_active = False
        db_session.commit()
        assert session_service.validate_session(token) is None

    def test_deactivated_theater_loses_session(self, theater, db_session):
        _session, token = session_service.create_session(_user())
        theater.is_active = False
        db_session.commit()
        assert session_service.validate_session(token) is None

    def test_operator_session_has_no_theater(self, operator):
        _session, token = session_service.create_session(operator)
        context = session_service.validate_session(token)
        assert context.theater_id is None
        assert context.is_admin is True

    def test_revoke_all(self, theater):
        user = _user()
        _s1, t1 = session_service.create_session(user)
        _s2, t2 = session_service.create_session(user)
        assert session_service.revoke_all_user_sessions(user.id) == 2
        assert session_service.validate_session(t1) is None
        assert session_service.validate_session(t2) is None
        assert session_service.revoke_session(t1) is False

    def test_cleanup_removes_old_dead_sessions(self, theater, db_session):
        user = _user()
        old, old_token = session_service.create_session(user)
        session_service.create_session(user)
        session_service.revoke_session(old_token)
        old.created_at = utcnow() - timedelta(days=40)
        db_session.commit()

        assert session_service.cleanup_expired_sessions(days=30) == 1
        assert SessionToken.query.count() == 1
