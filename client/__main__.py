"""
Desktop voice client.

Run: python -m client --url ws://localhost:3000/ws [--mobile] [--model openai/gpt-4o-mini]
Type "m" + Enter to toggle mute, "q" + Enter to quit.
"""
from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from client.session import VoiceClient
from models.schemas import Capabilities, Persona

logger = structlog.get_logger()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="client", description="Cantonese voice agent client")
    parser.add_argument("--url", default="ws://localhost:3000/ws")
    parser.add_argument("--model", default=None)
    parser.add_argument("--mobile", action="store_true", help="use mobile capability profile")
    parser.add_argument("--role", default="")
    parser.add_argument("--personality", default="")
    parser.add_argument("--word-limit", type=int, default=None)
    return parser.parse_args(argv)


async def _console(client: VoiceClient, task: asyncio.Task) -> None:
    muted = False
    while not task.done():
        raw = await asyncio.to_thread(sys.stdin.readline)
        line = raw.strip().lower()
        if line == "m":
            muted = not muted
            if muted:
                client.mute()
            else:
                client.unmute()
            logger.info("mic_muted" if muted else "mic_unmuted")
        elif line == "q" or not raw:
            await client.stop()
            await asyncio.sleep(0.2)
            task.cancel()
            return


async def main(argv=None) -> None:
    args = parse_args(argv)
    client = VoiceClient(
        args.url,
        capabilities=Capabilities(is_mobile=args.mobile),
        model=args.model,
        persona=Persona(role=args.role, personality=args.personality, word_limit=args.word_limit),
    )
    task = asyncio.create_task(client.run())
    console = asyncio.create_task(_console(client, task))
    try:
        await task
    except asyncio.CancelledError:
        pass
    finally:
        console.cancel()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
