import argparse
import asyncio
import sys
from typing import Any

from loguru import logger

from inspector.app.composition import create_inspector_dependencies
from inspector.app.constants import UNAUTHORIZED_MESSAGE, DispositionMode
from inspector.app.core import SERVICE_NAME
from inspector.app.domain.models import EntityRef, TargetSelector
from inspector.app.domain.rendering import preview, render_message
from inspector.app.domain.sequence_expression import parse_sequence_expression
from inspector.app.ports.broker import is_unauthorized


def _log(event: str, **kwargs) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dlq-inspector", description="Inspect and repair Service Bus messages.")
    target = parser.add_argument_group("entity")
    target.add_argument("--queue", help="queue name")
    target.add_argument("--topic", help="topic name (with --subscription)")
    target.add_argument("--subscription", help="subscription name (with --topic)")
    target.add_argument("--sessions", action="store_true", help="the entity is session-enabled")

    commands = parser.add_subparsers(dest="command", required=True)

    peek = commands.add_parser("peek", help="list one page of messages")
    peek.add_argument("--dlq", action="store_true", help="read the dead-letter sub-queue")
    peek.add_argument("--from", dest="from_sequence", type=int, default=1)
    peek.add_argument("--session-prefix", default=None)

    show = commands.add_parser("show", help="render one message by sequence number")
    show.add_argument("sequence", type=int)
    show.add_argument("--dlq", action="store_true")

    for mode in DispositionMode:
        cmd = commands.add_parser(mode.value, help=f"{mode.value} messages by sequence expression, e.g. 514-590,595")
        cmd.add_argument("sequences")
        cmd.add_argument("--session", default=None, help="session id of the targets")

    commands.add_parser("counts", help="show runtime message counters")
    commands.add_parser("verify", help="check the shared-key connection string over AMQP")
    return parser


def entity_from_args(args: argparse.Namespace, namespace: str) -> EntityRef:
    if args.queue:
        return EntityRef.queue(args.queue, session_enabled=args.sessions, namespace=namespace)
    if args.topic and args.subscription:
        return EntityRef.subscription(args.topic, args.subscription, session_enabled=args.sessions, namespace=namespace)
    raise SystemExit("either --queue or --topic with --subscription is required")


async def run(args: argparse.Namespace) -> int:
    deps = create_inspector_dependencies()
    try:
        await deps.connect()
        if args.command == "verify":
            result = await deps.raw_browse.verify_shared_key_connection(
                deps.settings.connection_string,
                deps.settings.connect_deadline_seconds,
            )
            print(f"{'OK' if result.ok else 'FAILED'} {result.host} policy={result.policy}: {result.message}")
            return 0 if result.ok else 1

        entity = entity_from_args(args, deps.settings.namespace)

        if args.command == "counts":
            counters = await deps.entity_client.runtime_counters(entity)
            print(
                f"total={counters.total} active={counters.active} "
                f"deadletter={counters.dead_letter} scheduled={counters.scheduled}"
            )
            return 0

        if args.command == "peek":
            pager = deps.pager(entity, dead_letter=args.dlq, session_prefix=args.session_prefix)
            page = await pager.page_from(args.from_sequence)
            for message in page:
                enqueued = message.enqueued_time.isoformat(timespec="seconds") if message.enqueued_time else ""
                print(
                    f"{message.sequence_number:>10}  {enqueued:<25}  {message.session_id or '':<16}  "
                    f"{message.message_id or '':<36}  {preview(message.body)}"
                )
            return 0

        if args.command == "show":
            found = await deps.pager(entity, dead_letter=args.dlq).jump_to(args.sequence)
            if found is None:
                print(f"sequence {args.sequence} not found", file=sys.stderr)
                return 1
            sys.stdout.write(render_message(found, entity))
            return 0

        mode = DispositionMode(args.command)
        sequences = parse_sequence_expression(args.sequences)
        if not sequences:
            print(f"no valid sequence numbers in {args.sequences!r}", file=sys.stderr)
            return 2
        page = await deps.pager(entity, dead_letter=mode != DispositionMode.REJECT).page_forward()
        summary = await deps.coordinator.dispose_many(
            entity,
            [TargetSelector(s, args.session) for s in sequences],
            mode,
            page=page,
        )
        for outcome in summary.outcomes:
            if not outcome.ok:
                print(f"{outcome.selector.sequence_number}: {outcome.error}", file=sys.stderr)
        print(f"{mode.value}: {summary.succeeded} succeeded, {summary.failed} failed")
        return 0 if summary.failed == 0 else 1
    finally:
        await deps.close()


def main(argv: Any = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        _log("inspector_interrupted")
        code = 130
    except Exception as e:
        if is_unauthorized(e):
            print(UNAUTHORIZED_MESSAGE, file=sys.stderr)
            code = 3
        else:
            logger.exception("inspector failed: {}", e)
            raise
    sys.exit(code)


if __name__ == "__main__":
    main()
