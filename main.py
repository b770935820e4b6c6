"""Skena: headless launcher. Blueprints a story from a premise and performs it."""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from skena.achievements import update_achievements
from skena.config import load_settings
from skena.errors import SkenaError
from skena.generation import GenerationClient
from skena.models import User
from skena.stage import StorySession, TurnScheduler, community_templates, script_from_template
from skena.storage import LegacyKeyValueStore, Library, LocalStore, migrate_legacy

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

LOG_LEVEL = os.getenv("SKENA_LOG_LEVEL", "INFO")


async def perform(args: argparse.Namespace) -> int:
    overrides = {}
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    if args.lang:
        overrides["language"] = args.lang
    settings = load_settings(**overrides)

    store = LocalStore(settings.data_dir)
    legacy_path = settings.data_dir / "legacy.json"
    if legacy_path.exists():
        migrate_legacy(store, LegacyKeyValueStore(legacy_path), owner_id=args.user)

    library = Library(store)
    user = library.get_user(args.user) or User(id=args.user, username=args.user)
    library.save_user(user)

    client = GenerationClient(settings)
    if args.template:
        templates = {t.id: t for t in community_templates()}
        if args.template not in templates:
            print(f"error: unknown template {args.template!r} (have: {', '.join(templates)})", file=sys.stderr)
            return 2
        script = script_from_template(templates[args.template], user.id)
        session = StorySession(user.id, library.scripts(user.id), client, script=script)
    else:
        session = StorySession(user.id, library.scripts(user.id), client)
        await session.create_blueprint(args.premise, library.load_characters(user.id))
        script = session.script
    print(f"\n== {script.title} ==\n{script.setting}\n")
    for i, point in enumerate(script.plot_points, 1):
        print(f"  {i}. {point}")

    session.begin_performance()
    scheduler = TurnScheduler(session)
    beats_per_chapter = max(1, args.beats // max(1, len(script.plot_points)))
    for n in range(args.beats):
        if n and n % beats_per_chapter == 0:
            session.next_chapter()
        if args.direct and n == args.beats // 2:
            await scheduler.direct(args.direct)
        await asyncio.sleep(scheduler.pacing)
        message = await scheduler.tick()
        if scheduler.last_error is not None:
            print(f"\n[halted] {scheduler.last_error}", file=sys.stderr)
            return 1
        if message is not None:
            print(f"\n{script.speaker_name(message.character_id)} [{message.type}]: {message.content}")
    session.pause()
    for achievement in update_achievements(library, user.id):
        print(f"\n{achievement.icon} Achievement unlocked: {achievement.title}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Skena headless performance")
    parser.add_argument("premise", nargs="?", default="", help="Story premise to blueprint")
    parser.add_argument("--template", default="",
                        help="Start from a community template id instead (e.g. comm-1)")
    parser.add_argument("--user", default="local", help="Owner id (default: local)")
    parser.add_argument("--beats", type=int, default=6, help="Beats to perform (default: 6)")
    parser.add_argument("--direct", default="", help="Director command issued half way")
    parser.add_argument("--lang", choices=["en-US", "zh-CN"], default=None)
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    args = parser.parse_args()
    if not args.premise and not args.template:
        parser.error("give a premise or --template")

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        sys.exit(asyncio.run(perform(args)))
    except SkenaError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
