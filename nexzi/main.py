"""
Command line entrypoint.

Sub-commands::

    nexzi relay                 serve the signaling relay
    nexzi share                 share this screen with whoever connects
    nexzi view ADDRESS          view a remote screen and record it
    nexzi offer / answer CODE   manual copy/paste exchange without a relay
    nexzi tips TOPIC            print a help text
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Callable, Optional

from .address import format_address
from .config import NexziConfig, load_config
from .negotiation.machine import Phase
from .rtc.aiortc_transport import AiortcTransport, RecorderBinding, ScreenCapture
from .services.tips import HelpTopic, TipsService
from .session import LifecycleEvent, SessionManager, SessionView
from .signaling.channel import InMemorySignalingChannel
from .signaling.relay_client import WebSocketSignalingChannel
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


async def serve(config: NexziConfig, host: Optional[str] = None, port: Optional[int] = None) -> None:
    """
    Run the signaling relay inside an asyncio loop.
    """

    import uvicorn

    from .api.server import create_app

    app = create_app(config)
    server_config = uvicorn.Config(
        app=app,
        host=host or config.relay.host,
        port=port or config.relay.port,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down relay...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    await server.serve()


def _screen_capture(config: NexziConfig) -> ScreenCapture:
    return ScreenCapture(
        device=config.capture.device,
        format=config.capture.format,
        framerate=config.capture.framerate,
        video_size=config.capture.video_size,
    )


def _report(view: SessionView, printer: Callable[[str], None]) -> None:
    if view.error:
        printer(f"Error: {view.error}")


async def _prompt(question: str) -> str:
    return (await asyncio.to_thread(input, question)).strip()


async def share(config: NexziConfig, *, auto_accept: bool = False) -> None:
    channel = WebSocketSignalingChannel(
        config.relay.url,
        queue_size=config.relay.queue_size,
        reconnect_delay=config.relay.reconnect_delay,
    )
    await channel.start()
    incoming: asyncio.Queue[str] = asyncio.Queue()

    def on_view(view: SessionView) -> None:
        _report(view, print)
        if view.phase is Phase.AWAITING_USER_ACCEPT and view.incoming_call:
            incoming.put_nowait(view.incoming_call)

    def on_lifecycle(event: LifecycleEvent, view: SessionView) -> None:
        if event is LifecycleEvent.CONNECTED:
            print(f"Sharing your screen with {format_address(view.remote_address or '')}.")
        else:
            print(f"Session ended. Your new address is {view.display_address}.")

    try:
        async with SessionManager(channel, AiortcTransport(), _screen_capture(config), config) as manager:
            manager.subscribe(on_view)
            manager.on_lifecycle(on_lifecycle)
            print(f"Your address is {manager.view.display_address}. Share it only with people you trust.")
            while True:
                caller = await incoming.get()
                if manager.view.incoming_call != caller:
                    continue
                answer = "y" if auto_accept else await _prompt(
                    f"{format_address(caller)} wants to view your screen. Accept? [y/N] "
                )
                if answer.lower() in {"y", "yes"}:
                    await manager.accept_call()
                else:
                    await manager.reject_call()
    finally:
        await channel.close()


async def _watch(manager: SessionManager, record: Optional[str]) -> None:
    finished = asyncio.Event()

    def on_view(view: SessionView) -> None:
        _report(view, print)
        if view.phase is Phase.IDLE and view.error:
            finished.set()

    def on_lifecycle(event: LifecycleEvent, view: SessionView) -> None:
        if event is LifecycleEvent.CONNECTED:
            print("Connected. Press Ctrl+C to end the session.")
        else:
            print("Session ended.")
            finished.set()

    binding = RecorderBinding(manager, record) if record else None
    manager.subscribe(on_view)
    manager.on_lifecycle(on_lifecycle)
    if binding is not None:
        binding.start()
    try:
        await finished.wait()
    finally:
        if binding is not None:
            await binding.aclose()


async def view(config: NexziConfig, address: str, *, record: Optional[str] = None) -> None:
    channel = WebSocketSignalingChannel(
        config.relay.url,
        queue_size=config.relay.queue_size,
        reconnect_delay=config.relay.reconnect_delay,
    )
    await channel.start()
    try:
        async with SessionManager(channel, AiortcTransport(), _screen_capture(config), config) as manager:
            await channel.connected.wait()
            print(f"Connecting to {format_address(address)}...")
            await manager.connect_to_remote(address)
            if manager.view.phase is Phase.IDLE:
                _report(manager.view, print)
                return
            await _watch(manager, record)
    finally:
        await channel.close()


async def manual_offer(config: NexziConfig, *, record: Optional[str] = None) -> None:
    channel = InMemorySignalingChannel()
    async with SessionManager(channel, AiortcTransport(), _screen_capture(config), config) as manager:
        code = await manager.create_offer()
        if not code:
            _report(manager.view, print)
            return
        print("Send this offer code to the person sharing their screen:\n")
        print(code)
        answer = await _prompt("\nPaste their answer code: ")
        await manager.accept_answer(answer)
        if manager.view.phase is Phase.IDLE:
            _report(manager.view, print)
            return
        await _watch(manager, record)


async def manual_answer(config: NexziConfig, offer_code: str) -> None:
    channel = InMemorySignalingChannel()
    async with SessionManager(channel, AiortcTransport(), _screen_capture(config), config) as manager:
        code = await manager.create_answer(offer_code)
        if not code:
            _report(manager.view, print)
            return
        print("Send this answer code back to the viewer:\n")
        print(code)
        await _watch(manager, None)


async def tips(config: NexziConfig, topic: str) -> None:
    service = TipsService(config.help)
    try:
        print(await service.fetch_tips(topic))
    finally:
        await service.aclose()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="nexzi peer-to-peer screen sharing")
    parser.add_argument("--config", default=None, help="path to a profiles YAML file")
    parser.add_argument("--profile", default="default", help="configuration profile to load")
    parser.add_argument("--log-level", default="INFO", help="logging level")
    commands = parser.add_subparsers(dest="command", required=True)

    relay_parser = commands.add_parser("relay", help="serve the signaling relay")
    relay_parser.add_argument("--host", default=None, help="bind host (defaults to the profile)")
    relay_parser.add_argument("--port", type=int, default=None, help="bind port (defaults to the profile)")

    share_parser = commands.add_parser("share", help="share this screen")
    share_parser.add_argument("--auto-accept", action="store_true", help="accept every incoming call")

    view_parser = commands.add_parser("view", help="view a remote screen")
    view_parser.add_argument("address", help="9 digit address of the sharing device")
    view_parser.add_argument("--record", default=None, help="record the remote screen to this file")

    offer_parser = commands.add_parser("offer", help="manual exchange: create an offer code")
    offer_parser.add_argument("--record", default=None, help="record the remote screen to this file")

    answer_parser = commands.add_parser("answer", help="manual exchange: answer an offer code")
    answer_parser.add_argument("code", help="offer code received from the viewer")

    tips_parser = commands.add_parser("tips", help="print a help text")
    tips_parser.add_argument("topic", choices=[topic.value for topic in HelpTopic])
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        config = load_config(args.config, profile=args.profile)
    except (OSError, ValueError) as exc:
        LOG.error("Could not load configuration: %s", exc)
        sys.exit(2)

    if args.command == "relay":
        coroutine = serve(config, host=args.host, port=args.port)
    elif args.command == "share":
        coroutine = share(config, auto_accept=args.auto_accept)
    elif args.command == "view":
        coroutine = view(config, args.address, record=args.record)
    elif args.command == "offer":
        coroutine = manual_offer(config, record=args.record)
    elif args.command == "answer":
        coroutine = manual_answer(config, args.code)
    else:
        coroutine = tips(config, args.topic)

    try:
        asyncio.run(coroutine)
    except KeyboardInterrupt:
        LOG.info("Interrupted by user.")


if __name__ == "__main__":
    run()
