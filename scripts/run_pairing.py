#!/usr/bin/env python3
"""Drive the pairing flow against a locally running agent.

Prints every transition and advisory as it happens, and the countdown of
the displayed pairing code when ``--countdown`` is given. Stops on the
first terminal screen, or keeps the configured screen's liveness loop
running for ``--linger`` seconds.

Configuration comes from ``MACHINELINK_*`` environment variables, with
``--agent-url`` taking precedence.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from machinelink import (  # noqa: E402
    AgentClient,
    FlowState,
    MachineLinkConfig,
    MachineLinkError,
    PairingOrchestrator,
    TransitionEvent,
)
from machinelink._redact import redact_for_log  # noqa: E402
from machinelink.state.policy import is_terminal  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the machine pairing flow against a local agent.")
    parser.add_argument("--agent-url", default=None, help="Agent base URL (default: MACHINELINK_AGENT_URL)")
    parser.add_argument("--linger", type=float, default=30.0, help="Seconds to stay on the configured screen")
    parser.add_argument("--countdown", action="store_true", help="Print pairing code countdown ticks")
    parser.add_argument("--show-code", action="store_true", help="Print pairing codes unredacted")
    parser.add_argument("--exit-agent", action="store_true", help="Ask the agent to exit when done")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def _print_event(event: TransitionEvent, *, show_code: bool) -> None:
    payload = event.payload if show_code else redact_for_log(event.payload)
    line = f"{event.emitted_at:%H:%M:%S} {event.previous} -> {event.state}"
    if event.is_advisory_only:
        line = f"{event.emitted_at:%H:%M:%S} [{event.state}] advisory"
    if event.advisory.message:
        line += f"  ({event.advisory.kind}: {event.advisory.message})"
    if payload:
        line += f"  {json.dumps(payload, default=str)}"
    print(line, flush=True)


async def _run(args: argparse.Namespace) -> int:
    overrides = {"agent_url": args.agent_url} if args.agent_url else {}
    config = MachineLinkConfig.from_env(**overrides)
    done = asyncio.Event()

    def on_transition(event: TransitionEvent) -> None:
        _print_event(event, show_code=args.show_code)
        if event.state == FlowState.CONFIGURED or is_terminal(event.state):
            done.set()

    def on_countdown(remaining: int) -> None:
        if args.countdown:
            print(f"  code expires in {remaining}s", flush=True)

    async with AgentClient(config) as agent:
        async with PairingOrchestrator(
            agent,
            config,
            on_transition=on_transition,
            on_countdown=on_countdown,
        ) as flow:
            await flow.start()
            await done.wait()

            if flow.state == FlowState.CONFIGURED and args.linger > 0:
                await asyncio.sleep(args.linger)
                snap = flow.snapshot()
                print(json.dumps(snap.model_dump(mode="json"), indent=2), flush=True)

            final = flow.state
            if args.exit_agent:
                await flow.exit()

    return 0 if final == FlowState.CONFIGURED else 1


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except MachineLinkError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
