"""
Tests pour twitchapi/transports/irc_protocol.py et twitchapi/irc_tags.py
Vérifie le parsing IRCv3 et le décodage des tags Twitch
"""
import uuid

import pytest

from core.errors import ProtocolError
from twitchapi.irc_tags import (
    channel_user_delta,
    global_user_delta,
    message_identifier,
    privmsg_channel_delta,
    roomstate_delta,
)
from twitchapi.transports.irc_protocol import parse_irc_line, unescape_tag_value


PRIVMSG = (
    "@badge-info=;badges=moderator/1;color=#1E90FF;display-name=Viewer;"
    "id=b34ccfc7-4977-403a-8a94-33c6bac34fb8;mod=1;room-id=42;subscriber=0;"
    "tmi-sent-ts=1507246572675;turbo=0;user-id=100;user-type=mod "
    ":viewer!viewer@viewer.tmi.twitch.tv PRIVMSG #Streamer :hello world :)"
)


@pytest.mark.unit
class TestParseIrcLine:
    """Tests parse_irc_line()"""

    def test_privmsg(self):
        """Tags, source, commande, channel et trailing"""
        message = parse_irc_line(PRIVMSG)

        assert message.command == "PRIVMSG"
        assert message.nick == "viewer"
        assert message.channel == "streamer"
        assert message.trailing == "hello world :)"
        assert message.tags["display-name"] == "Viewer"
        assert message.tags["badge-info"] == ""

    def test_ping_without_source(self):
        """PING :tmi.twitch.tv"""
        message = parse_irc_line("PING :tmi.twitch.tv")
        assert message.command == "PING"
        assert message.params == ["tmi.twitch.tv"]
        assert message.source is None
        assert message.channel is None

    def test_numeric_and_crlf(self):
        """Numérique avec CRLF final"""
        message = parse_irc_line(":tmi.twitch.tv 001 bot :Welcome, GLHF!\r\n")
        assert message.command == "001"
        assert message.params == ["bot", "Welcome, GLHF!"]

    def test_cap_ack(self):
        """CAP * ACK :twitch.tv/tags twitch.tv/commands"""
        message = parse_irc_line(":tmi.twitch.tv CAP * ACK :twitch.tv/tags twitch.tv/commands")
        assert message.params == ["*", "ACK", "twitch.tv/tags twitch.tv/commands"]

    @pytest.mark.parametrize("line", ["", "   ", "@a=b", ":source.only"])
    def test_malformed_lines(self, line):
        """Ligne vide ou sans commande → ProtocolError"""
        with pytest.raises(ProtocolError):
            parse_irc_line(line)

    def test_unescape_tag_value(self):
        """Échappements IRCv3 (\\s, \\:, \\\\)"""
        assert unescape_tag_value(r"hello\sworld\:\\") == "hello world;\\"
        assert unescape_tag_value("trailing\\") == "trailing"


@pytest.mark.unit
class TestIrcTags:
    """Tests des conversions tags → deltas"""

    def test_channel_user_delta_from_privmsg(self):
        """PRIVMSG → user id, nom, flags"""
        message = parse_irc_line(PRIVMSG)
        delta = channel_user_delta(message.tags, message.nick)

        assert delta.user.identifier == 100
        assert delta.user.login_name == "viewer"
        assert delta.user.color == "#1E90FF"
        assert delta.is_moderator is True
        assert delta.is_subscriber is False
        assert delta.is_first_message is None

    def test_absent_tags_are_none(self):
        """USERSTATE sans user-id → identifiant None"""
        delta = global_user_delta({"display-name": "Bot", "color": ""}, "bot")
        assert delta.identifier is None
        assert delta.color is None

    def test_empty_badges_are_values(self):
        """badges= et user-type= vides → chaîne vide (badges retirés), absents → None"""
        delta = channel_user_delta({"user-id": "100", "badges": "", "user-type": ""}, "viewer")
        assert delta.badges == ""
        assert delta.user_type == ""

        assert channel_user_delta({"user-id": "100"}, "viewer").badges is None

    def test_partial_roomstate(self):
        """ROOMSTATE partiel: seuls les tags présents sont renseignés"""
        delta = roomstate_delta({"room-id": "42", "slow": "10"}, "Streamer")
        assert delta.identifier == 42
        assert delta.name == "streamer"
        assert delta.slow_mode == 10
        assert delta.emote_only is None
        assert delta.followers_only is None

    def test_followers_only_disabled(self):
        """followers-only=-1 → désactivé"""
        assert roomstate_delta({"followers-only": "-1"}).followers_only == -1

    def test_invalid_integer_raises(self):
        """room-id non entier → ProtocolError"""
        with pytest.raises(ProtocolError):
            roomstate_delta({"room-id": "abc"})

    def test_message_identifier(self):
        """Tag id → UUID; absent → UUID généré; invalide → ProtocolError"""
        value = "b34ccfc7-4977-403a-8a94-33c6bac34fb8"
        assert message_identifier({"id": value}) == uuid.UUID(value)
        assert isinstance(message_identifier({}), uuid.UUID)
        with pytest.raises(ProtocolError):
            message_identifier({"id": "not-a-uuid"})

    def test_privmsg_channel_delta(self):
        """PRIVMSG → référence channel sans modes"""
        delta = privmsg_channel_delta({"room-id": "42", "slow": "5"}, "Streamer")
        assert (delta.identifier, delta.name, delta.slow_mode) == (42, "streamer", None)
