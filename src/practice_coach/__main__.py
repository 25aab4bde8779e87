import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from practice_coach.app_config import load_json_config, parse_app_config, resolve_runtime_env
from practice_coach.bootstrap import bootstrap_runtime, open_store
from practice_coach.logging_config import setup_logging
from practice_coach.seed import seed_demo
from practice_coach.startup_checks import run_startup_checks

_USAGE = "usage: python -m practice_coach [serve | seed-demo]"


async def serve() -> int:
    app = parse_app_config(load_json_config())
    env = resolve_runtime_env()

    report = run_startup_checks(app, env)
    runtime = bootstrap_runtime(app, env)
    for warning in report.warnings:
        logger.warning(warning)
    if not report.ok:
        for error in report.errors:
            logger.error(error)
        runtime.close()
        return 1

    print("practice-coach conversation server")
    print(f"Listening: ws://{app.host}:{app.port}/ws/conversation/<sessionId>?token=...")
    print(f"Database: {app.database_path}")
    print(f"Default model: {app.default_model} (fallback: {app.fallback_model})")
    print(f"Providers: {', '.join(sorted(env.api_keys)) or 'none'}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        await runtime.server.serve_forever()
    finally:
        runtime.close()
    return 0


async def seed() -> int:
    app = parse_app_config(load_json_config())
    setup_logging(level=app.log_level, consumers=[{"type": "console"}])
    store = open_store(app)
    try:
        demo = await seed_demo(store, app.default_model)
    finally:
        store.close()

    base = f"ws://{app.host}:{app.port}"
    print(f"Participant: {base}/ws/conversation/{demo.session_id}?token={demo.user.api_token}")
    print(f"Observer:    {base}/ws/observe/{demo.session_id}?token={demo.staff.api_token}")
    print(f"Quota: {demo.invitation.quota.tokens:,} tokens ({demo.invitation.quota.label})")
    return 0


def main(argv: list[str]) -> int:
    load_dotenv()
    command = argv[0] if argv else "serve"
    if command == "serve":
        try:
            return asyncio.run(serve())
        except KeyboardInterrupt:
            return 0
    if command == "seed-demo":
        return asyncio.run(seed())
    print(_USAGE, file=sys.stderr)
    return 2


def _entry_point() -> None:
    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":
    _entry_point()
