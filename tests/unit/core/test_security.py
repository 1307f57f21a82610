"""Tests for actor tokens."""

from datetime import timedelta

from docgate.core.policy.rules import Actor
from docgate.core.security import create_actor_token, decode_actor_token


class TestActorTokens:
    def test_round_trip_keeps_actor_context(self):
        actor = Actor(user_id="u-1", roles=["admin"], group_ids=["mgmt"], group_account_ids=["acct-1"])

        decoded = decode_actor_token(create_actor_token(actor, expires_delta=timedelta(minutes=5)))

        assert decoded == actor

    def test_expired_token_rejected(self):
        token = create_actor_token(Actor(user_id="u-1"), expires_delta=timedelta(minutes=-1))
        assert decode_actor_token(token) is None

    def test_token_without_subject_rejected(self):
        assert decode_actor_token(create_actor_token(Actor())) is None

    def test_garbage_rejected(self):
        assert decode_actor_token("not.a.token") is None
