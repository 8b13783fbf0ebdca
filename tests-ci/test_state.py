"""
Tests pour core/state.py (EntityState)
Vérifie la réconciliation des deltas et les index par nom
"""
import uuid

import pytest

from core.errors import NotFoundError, ProtocolError
from core.models import (
    Channel,
    ChannelDelta,
    ChannelUserDelta,
    GlobalUser,
    GlobalUserDelta,
    Message,
)


@pytest.mark.unit
class TestChannelReconciliation:
    """Tests upsert_channel"""

    @pytest.mark.asyncio
    async def test_two_deltas_merge_into_one_channel(self, state):
        """Nom puis titre pour le channel 42 → une seule entrée avec les deux"""
        await state.upsert_channel(ChannelDelta(identifier=42, name="foo"))
        await state.upsert_channel(ChannelDelta(identifier=42, title="hello"))

        channel = state.get_channel(42)
        assert channel.name == "foo"
        assert channel.title == "hello"
        assert state.get_stats()["channels"] == 1

    @pytest.mark.asyncio
    async def test_same_delta_twice_is_idempotent(self, state):
        """Appliquer deux fois le même delta = l'appliquer une fois"""
        delta = ChannelDelta(identifier=7, name="bar", slow_mode=30, r9k=True)
        first = await state.upsert_channel(delta)
        snapshot = dict(vars(first))
        second = await state.upsert_channel(delta)

        assert second is first
        assert vars(second) == snapshot

    @pytest.mark.asyncio
    async def test_none_fields_never_erase(self, state):
        """Un champ absent du delta conserve la valeur existante"""
        await state.upsert_channel(ChannelDelta(identifier=1, name="x", title="titre"))
        await state.upsert_channel(ChannelDelta(identifier=1, is_live=True))

        channel = state.get_channel(1)
        assert channel.title == "titre"
        assert channel.is_live is True

    @pytest.mark.asyncio
    async def test_delta_without_id_resolved_by_name(self, state):
        """ROOMSTATE sans room-id → résolu par l'index des noms"""
        await state.upsert_channel(ChannelDelta(identifier=5, name="Streamer"))
        channel = await state.upsert_channel(ChannelDelta(name="streamer", emote_only=True))

        assert channel.identifier == 5
        assert channel.emote_only is True

    @pytest.mark.asyncio
    async def test_unresolvable_channel_raises(self, state):
        """Ni identifiant ni nom connu → ProtocolError"""
        with pytest.raises(ProtocolError):
            await state.upsert_channel(ChannelDelta(name="inconnu"))

    @pytest.mark.asyncio
    async def test_rename_updates_name_index(self, state):
        """Un changement de nom retire l'ancien nom de l'index"""
        await state.upsert_channel(ChannelDelta(identifier=3, name="old"))
        await state.upsert_channel(ChannelDelta(identifier=3, name="new"))

        assert state.find_channel_by_name("old") is None
        assert state.find_channel_by_name("#NEW").identifier == 3

    def test_get_missing_channel_raises(self, state):
        """get_channel sur un id inconnu → NotFoundError"""
        with pytest.raises(NotFoundError):
            state.get_channel(999)


@pytest.mark.unit
class TestGlobalUsers:
    """Tests upsert_global_user et résolution par nom"""

    @pytest.mark.asyncio
    async def test_upsert_requires_identifier(self, state):
        """Un global user sans id ne peut pas être créé"""
        with pytest.raises(ProtocolError):
            await state.upsert_global_user(GlobalUserDelta(display_name="Anon"))

    @pytest.mark.asyncio
    async def test_lookup_is_case_insensitive(self, state):
        """Index par login et display name, insensible à la casse"""
        await state.upsert_global_user(GlobalUserDelta(identifier=10, login_name="alice", display_name="Alice"))

        assert state.find_global_user_by_name("ALICE").identifier == 10
        assert state.find_global_user_by_name("bob") is None

    @pytest.mark.asyncio
    async def test_login_defaults_to_lowercase_display_name(self, state):
        """Sans login, le login est dérivé du display name"""
        user = await state.upsert_global_user(GlobalUserDelta(identifier=11, display_name="Bob"))
        assert user.login_name == "bob"

    @pytest.mark.asyncio
    async def test_rebuild_name_index(self, state):
        """L'index par nom se reconstruit depuis les registres"""
        await state.insert_global_user(GlobalUser(identifier=12, login_name="carol", display_name="Carol"))
        await state.insert_channel(Channel(identifier=12, name="carol"))
        state._user_names.clear()
        state._channel_names.clear()

        state.rebuild_name_index()

        assert state.find_global_user_by_name("carol").identifier == 12
        assert state.find_channel_by_name("carol").identifier == 12


@pytest.mark.unit
class TestChannelUsers:
    """Tests upsert_channel_user"""

    @pytest.mark.asyncio
    async def test_channel_user_keyed_per_channel(self, state):
        """Le même user dans deux channels = deux ChannelUser"""
        first = await state.insert_channel(Channel(identifier=1, name="one"))
        second = await state.insert_channel(Channel(identifier=2, name="two"))
        delta = ChannelUserDelta(user=GlobalUserDelta(identifier=50, login_name="dave"), is_moderator=True)

        in_first = await state.upsert_channel_user(delta, first)
        in_second = await state.upsert_channel_user(
            ChannelUserDelta(user=GlobalUserDelta(identifier=50)), second
        )

        assert in_first is not in_second
        assert in_first.user is in_second.user
        assert in_first.is_moderator is True
        assert in_second.is_moderator is False
        assert state.get_channel_user((1, 50)) is in_first

    @pytest.mark.asyncio
    async def test_userstate_without_id_resolved_by_name(self, state):
        """USERSTATE (pas de user-id) → GlobalUser résolu par nom"""
        channel = await state.insert_channel(Channel(identifier=1, name="one"))
        await state.insert_global_user(GlobalUser(identifier=60, login_name="bot", display_name="Bot"))

        channel_user = await state.upsert_channel_user(
            ChannelUserDelta(user=GlobalUserDelta(login_name="bot", color="#FF0000"), is_moderator=True),
            channel,
        )

        assert channel_user.user.identifier == 60
        assert channel_user.user.color == "#FF0000"
        assert state.find_channel_user_by_name(channel, "BOT") is channel_user

    @pytest.mark.asyncio
    async def test_unknown_name_without_id_raises(self, state):
        """Nom inconnu et pas d'id → ProtocolError"""
        channel = await state.insert_channel(Channel(identifier=1, name="one"))
        with pytest.raises(ProtocolError):
            await state.upsert_channel_user(ChannelUserDelta(user=GlobalUserDelta(login_name="ghost")), channel)

    @pytest.mark.asyncio
    async def test_empty_badges_clear_previous_badges(self, state):
        """Badge perdu: badges vide dans le delta → badges effacés, flags inchangés"""
        channel = await state.insert_channel(Channel(identifier=1, name="one"))
        user = GlobalUserDelta(identifier=70, login_name="eve")
        await state.upsert_channel_user(
            ChannelUserDelta(user=user, badges="subscriber/12", is_subscriber=True), channel
        )

        channel_user = await state.upsert_channel_user(ChannelUserDelta(user=user, badges=""), channel)

        assert channel_user.badges == ""
        assert channel_user.is_subscriber is True

    @pytest.mark.asyncio
    async def test_broadcaster_flag(self, state):
        """is_broadcaster quand l'id user = l'id channel"""
        channel = await state.insert_channel(Channel(identifier=9, name="nine"))
        owner = await state.upsert_channel_user(ChannelUserDelta(user=GlobalUserDelta(identifier=9, login_name="nine")), channel)
        assert owner.is_broadcaster is True


@pytest.mark.unit
class TestMessages:
    """Tests insert_message (insert-only)"""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, state):
        """Un message inséré se retrouve par identifiant"""
        channel = await state.insert_channel(Channel(identifier=1, name="one"))
        author = await state.upsert_channel_user(ChannelUserDelta(user=GlobalUserDelta(identifier=2, login_name="eve")), channel)
        message = await state.insert_message(Message(author=author, content="salut"))

        assert state.get_message(message.identifier) is message
        assert message.channel is channel

    @pytest.mark.asyncio
    async def test_duplicate_identifier_raises(self, state):
        """Deux messages avec le même id → ProtocolError"""
        channel = await state.insert_channel(Channel(identifier=1, name="one"))
        author = await state.upsert_channel_user(ChannelUserDelta(user=GlobalUserDelta(identifier=2, login_name="eve")), channel)
        identifier = uuid.uuid4()
        await state.insert_message(Message(author=author, content="a", identifier=identifier))

        with pytest.raises(ProtocolError):
            await state.insert_message(Message(author=author, content="b", identifier=identifier))

    def test_missing_message_raises(self, state):
        """get_message inconnu → NotFoundError (aussi un LookupError)"""
        with pytest.raises(LookupError):
            state.get_message(uuid.uuid4())
