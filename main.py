#!/usr/bin/env python3
"""
Twitch Bot - Session chat IRC + notifications EventSub + API Helix

Démarrage:
    1. Configuration (YAML + TWITCH_BOT_*)
    2. Tokens bot + broadcaster (load → validate → refresh → autorisation)
    3. Bootstrap Helix (compte du bot, channel principal)
    4. Session chat: connexion, authentification, JOIN du channel principal
    5. Session EventSub: welcome, abonnements channel.update / stream.online / stream.offline

Tout échec de configuration, d'authentification ou de transport au démarrage
termine le process avec le code 1.
"""

import argparse
import asyncio
import logging
import pathlib
import signal
import sys
import time
from typing import Optional

from commands.registry import CommandRegistry, register_bot_commands
from core.config import BotConfig, load_config, write_config_skeleton
from core.errors import AuthError, BotError, ConfigError, TransportError
from core.message_bus import MessageBus
from core.message_handler import MessageHandler
from core.models import Channel, Message
from core.state import EntityState
from twitchapi.auth_manager import AuthManager, TokenRole
from twitchapi.helix_client import HelixClient, channel_delta_from_helix, global_user_from_helix
from twitchapi.transports.eventsub_client import EventSubClient
from twitchapi.transports.irc_client import IRCClient
from twitchapi.transports.irc_protocol import IrcTransport

LOGGER = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("channel.update", "stream.online", "stream.offline")


def parse_args(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(description="Twitch Bot - chat + EventSub + Helix")
    parser.add_argument(
        '--config',
        type=str,
        default='config/config.yaml',
        help='Path to config file (default: config/config.yaml)'
    )
    parser.add_argument(
        '--init',
        action='store_true',
        help='Write a default config file and the data directories, then exit'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable DEBUG logging (raw IRC lines included)'
    )
    return parser.parse_args(argv)


def setup_logging(log_directory="logs", debug=False):
    """Console + logs/bot.log"""
    logs_base = pathlib.Path(log_directory)
    logs_base.mkdir(parents=True, exist_ok=True)
    log_file = logs_base / "bot.log"

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding="utf-8"),
            logging.StreamHandler()
        ],
        force=True  # Override any existing config
    )
    return log_file


def init_layout(args) -> int:
    """Mode --init: squelette de configuration + répertoires"""
    try:
        config_file = write_config_skeleton(args.config)
    except ConfigError as e:
        print(f"❌ {e}")
        return 1
    defaults = BotConfig()
    for directory in (defaults.data_directory, defaults.log_directory):
        pathlib.Path(directory).mkdir(parents=True, exist_ok=True)
    print(f"✅ Configuration écrite dans {config_file}, compléter client_id / client_secret / primary_channel_id")
    return 0


async def ensure_tokens(auth: AuthManager, config: BotConfig) -> None:
    """Token bot puis token broadcaster, chacun validé avec ses scopes"""
    await auth.ensure_token(TokenRole.BOT, config.scopes, config.redirect_url)
    await auth.ensure_token(
        TokenRole.BROADCASTER,
        [*config.scopes, *config.broadcaster_scopes],
        config.redirect_url,
    )


async def start_notifications(eventsub: EventSubClient, channel: Channel) -> Optional[asyncio.Task]:
    """Session EventSub + abonnements du channel principal. Un échec n'arrête pas le chat."""
    try:
        await eventsub.connect()
        for notification_type in NOTIFICATION_TYPES:
            await eventsub.subscribe_for_channel(notification_type, channel)
    except BotError as e:
        LOGGER.error(f"❌ EventSub indisponible, le bot continue sans notifications: {e}")
        await eventsub.close()
        return None
    return asyncio.create_task(eventsub.run(), name="eventsub")


async def run_bot(config: BotConfig) -> int:
    """Démarre les deux sessions et attend l'arrêt"""
    started_at = time.time()
    bus = MessageBus()
    state = EntityState()
    auth = AuthManager(
        config.client_id,
        config.client_secret,
        data_directory=config.data_directory,
        oauth_url=config.oauth_url,
    )
    helix = HelixClient(auth, base_url=config.helix_url, retry_delay=config.retry_delay)
    irc_client: Optional[IRCClient] = None
    eventsub: Optional[EventSubClient] = None
    tasks: list[asyncio.Task] = []

    try:
        # 1. Tokens
        await ensure_tokens(auth, config)

        # 2. Bootstrap Helix
        users = await helix.get_users()
        if not users:
            raise AuthError("Helix returned no user for the bot token")
        bot_user = await state.insert_global_user(global_user_from_helix(users[0]))
        LOGGER.info(f"🤖 Compte bot: {bot_user}")

        info = await helix.get_channel_information(config.primary_channel_id)
        if info is None:
            raise ConfigError(f"Channel {config.primary_channel_id} not found on Helix")
        channel = await state.insert_channel(Channel.from_delta(channel_delta_from_helix(info)))
        LOGGER.info(f"📺 Channel principal: {channel}")

        # 3. Commandes
        registry = CommandRegistry()
        register_bot_commands(registry, started_at)
        registry.freeze()

        # 4. Session chat
        irc_client = IRCClient(
            IrcTransport(config.chat_host, config.chat_port),
            auth, state, bus,
            bot_login=bot_user.login_name,
            helix=helix,
            join_timeout=config.join_timeout,
        )

        async def reply(message: Message, text: str) -> None:
            await irc_client.reply(message, text)

        MessageHandler(bus, registry, prefix=config.command_prefix, reply=reply,
                       ignored_user_ids=[bot_user.identifier])

        await irc_client.start()
        tasks.append(asyncio.create_task(irc_client.run(), name="irc"))
        if not await irc_client.join_channel(channel):
            raise TransportError(f"Could not join #{channel.name}")

        # 5. Session EventSub (après READY du chat)
        eventsub = EventSubClient(helix, state, bus, url=config.eventsub_url)
        eventsub_task = await start_notifications(eventsub, channel)
        if eventsub_task is not None:
            tasks.append(eventsub_task)

    except BotError as e:
        LOGGER.error(f"❌ Démarrage impossible: {e}")
        await shutdown(irc_client, eventsub, tasks, helix, auth)
        return 1

    LOGGER.info("✅ Bot démarré, Ctrl+C pour arrêter")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            LOGGER.debug(f"Signal {sig.name} non géré sur cette plateforme")

    stop_task = asyncio.create_task(stop_event.wait(), name="stop")
    await asyncio.wait({tasks[0], stop_task}, return_when=asyncio.FIRST_COMPLETED)
    stop_task.cancel()

    LOGGER.info(f"Stats état: {state.get_stats()} | bus: {bus.get_stats()}")
    await shutdown(irc_client, eventsub, tasks, helix, auth)
    return 0


async def shutdown(irc_client, eventsub, tasks, helix, auth) -> None:
    """Ferme les sessions puis les clients HTTP"""
    if eventsub:
        await eventsub.close()
    if irc_client:
        await irc_client.close()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    await helix.close()
    await auth.close()
    LOGGER.info("Terminé")


async def main(argv=None) -> int:
    """Main entry point"""
    args = parse_args(argv)
    if args.init:
        return init_layout(args)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"❌ {e}")
        return 1

    setup_logging(config.log_directory, args.debug)

    print("=" * 70)
    print("Twitch Bot - chat IRC + EventSub + Helix")
    print(f"Channel principal: {config.primary_channel_id}")
    print("=" * 70)

    try:
        config.validate()
    except ConfigError as e:
        LOGGER.error(f"❌ {e}")
        return 1

    return await run_bot(config)


def cli():
    """Point d'entrée console"""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nAu revoir !")


if __name__ == "__main__":
    cli()
