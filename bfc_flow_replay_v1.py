"""
Beckn Flow Conformance (BFC) - Flow Replay
Version: 1.0.0

Replays the logged payloads of one flow, in order, through the engine and
collects one ledger per step. Used to audit a recorded transaction after
the fact.

Usage:
    python bfc_flow_replay_v1.py flow.json [--session S] [--flow F]
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
import argparse
import asyncio
import json
import logging
import sys
import uuid

from bfc_engine_v1 import ConformanceEngine, get_default_engine
from bfc_ledger_v1 import ValidationLedger
from bfc_payload_v1 import Payload

logger = logging.getLogger("BFC.Replay")

# ============================================
# REPORT
# ============================================

@dataclass
class FlowStep:
    """One replayed payload and its ledger."""
    index: int
    action: str
    transaction_id: Optional[str]
    ledger: ValidationLedger

    @property
    def failed(self) -> bool:
        return bool(self.ledger.failed)

@dataclass
class FlowReport:
    session_id: str
    flow_id: str
    steps: List[FlowStep] = field(default_factory=list)

    @property
    def total_passed(self) -> int:
        return sum(len(s.ledger.passed) for s in self.steps)

    @property
    def total_failed(self) -> int:
        return sum(len(s.ledger.failed) for s in self.steps)

    @property
    def total_skipped(self) -> int:
        return sum(len(s.ledger.skipped) for s in self.steps)

    @property
    def failed_actions(self) -> List[str]:
        return [s.action for s in self.steps if s.failed]

    @property
    def is_valid(self) -> bool:
        return self.total_failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'flow_id': self.flow_id,
            'totals': {
                'steps': len(self.steps),
                'passed': self.total_passed,
                'failed': self.total_failed,
                'skipped': self.total_skipped
            },
            'failed_actions': self.failed_actions,
            'steps': [
                {
                    'index': s.index,
                    'action': s.action,
                    'transaction_id': s.transaction_id,
                    'ledger': s.ledger.to_dict()
                }
                for s in self.steps
            ]
        }

# ============================================
# REPLAYER
# ============================================

class FlowReplayer:
    """Feeds payloads to ConformanceEngine.process_message in log order."""

    def __init__(self, engine: ConformanceEngine):
        self.engine = engine

    async def replay(
        self,
        payloads: Sequence[Any],
        session_id: Optional[str] = None,
        flow_id: Optional[str] = None
    ) -> FlowReport:
        session_id = session_id or f"replay-{uuid.uuid4().hex[:8]}"
        flow_id = flow_id or "replay"
        report = FlowReport(session_id=session_id, flow_id=flow_id)

        for index, raw in enumerate(payloads):
            payload = Payload(raw)
            ledger = await self.engine.process_message(raw, session_id, flow_id)
            step = FlowStep(index, payload.action or "?", payload.transaction_id, ledger)
            report.steps.append(step)
            logger.info(
                f"STEP {index} {step.action}: "
                f"{len(ledger.passed)} passed, {len(ledger.failed)} failed"
            )

        logger.info(
            f"REPLAY {session_id}/{flow_id}: {len(report.steps)} steps, "
            f"{report.total_failed} failures in {report.failed_actions or 'no actions'}"
        )
        return report

def load_payloads(path) -> List[Any]:
    """A JSON array of payloads, or an object with a 'payloads' array."""
    document = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(document, dict):
        document = document.get('payloads', [])
    if not isinstance(document, list):
        raise ValueError(f"{path}: expected a JSON array of payloads")
    return document

async def replay_file(
    path,
    engine: Optional[ConformanceEngine] = None,
    session_id: Optional[str] = None,
    flow_id: Optional[str] = None
) -> FlowReport:
    replayer = FlowReplayer(engine or get_default_engine())
    return await replayer.replay(load_payloads(path), session_id, flow_id)

# ============================================
# CLI
# ============================================

def print_report(report: FlowReport):
    print("\n" + "=" * 80)
    print(f"FLOW REPLAY - session={report.session_id} flow={report.flow_id}")
    print("=" * 80)
    for step in report.steps:
        mark = "❌" if step.failed else "✅"
        print(f"  {mark} [{step.index:02d}] {step.action:<12} "
              f"passed={len(step.ledger.passed):<4} failed={len(step.ledger.failed):<4} "
              f"skipped={len(step.ledger.skipped)}")
        for message in step.ledger.failed:
            print(f"       - {message}")
    print("-" * 80)
    print(f"  Total: {report.total_passed} passed, {report.total_failed} failed, "
          f"{report.total_skipped} skipped")
    print("=" * 80 + "\n")

def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Replay a logged beckn flow through the conformance engine")
    parser.add_argument("path", help="JSON file with the ordered payloads of one flow")
    parser.add_argument("--session", default=None, help="session id used for snapshot keys")
    parser.add_argument("--flow", default=None, help="flow id used for snapshot keys")
    parser.add_argument("--json", action="store_true", help="print the full report as JSON")
    args = parser.parse_args(argv)

    report = asyncio.run(replay_file(args.path, session_id=args.session, flow_id=args.flow))
    if args.json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        print_report(report)
    return 0 if report.is_valid else 1

if __name__ == "__main__":
    sys.exit(main())
