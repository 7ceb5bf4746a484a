"""Operator CLI for the scorecard sync core.

Usage:
    python cli.py score --responses='{"q1_value": "A", "q2_customer": "C"}'
    python cli.py process-queue --batch-size=20
    python cli.py dead-letter
    python cli.py stats
    python cli.py health
    python cli.py maintenance
    python cli.py worker
"""

import argparse
import json
import sys

from scorecard.health import HealthMonitor
from scorecard.retry_queue import RetryQueueService
from scorecard.scoring import calculate_assessment_score
from scorecard import worker


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def cmd_score(args):
    try:
        responses = json.loads(args.responses)
    except ValueError as e:
        print(f"Invalid --responses JSON: {e}", file=sys.stderr)
        return 2
    if not isinstance(responses, dict):
        print("--responses must be a JSON object", file=sys.stderr)
        return 2

    result = calculate_assessment_score(responses)
    result["score_breakdown"] = result["score_breakdown"].to_dict()
    print(f"  {result['total_score']} ({result['score_category']})\n", file=sys.stderr)
    _print_json(result)
    return 0


def cmd_process_queue(args):
    result = worker.run_once(args.batch_size)
    _print_json(result.to_dict())
    return 0 if result.failed == 0 else 1


def cmd_dead_letter(args):
    entries = RetryQueueService().get_dead_letter_queue()
    print(f"{len(entries)} dead-lettered entr{'y' if len(entries) == 1 else 'ies'}\n", file=sys.stderr)
    _print_json([e.to_dict() for e in entries])
    return 0


def cmd_stats(args):
    queue = RetryQueueService()
    _print_json({**queue.get_queue_statistics(), "failed_by_error_type": queue.get_error_stats()})
    return 0


def cmd_health(args):
    result = HealthMonitor().perform_health_check()
    print(f"  Status: {result['status']}\n", file=sys.stderr)
    _print_json(result)
    return 0 if result["status"] != "unhealthy" else 1


def cmd_maintenance(args):
    _print_json(worker.run_maintenance())
    return 0


def cmd_worker(args):
    try:
        worker.run_forever()
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="AI Reality Check scorecard: HubSpot sync tools")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("score", help="Score a set of responses without storing anything")
    p.add_argument("--responses", required=True, help='JSON object, e.g. \'{"q1_value": "A"}\'')
    p.set_defaults(func=cmd_score)

    p = sub.add_parser("process-queue", help="Process one batch of due retry-queue entries")
    p.add_argument("--batch-size", type=int, default=None)
    p.set_defaults(func=cmd_process_queue)

    sub.add_parser("dead-letter", help="List dead-lettered sync entries").set_defaults(func=cmd_dead_letter)
    sub.add_parser("stats", help="Queue counts by status").set_defaults(func=cmd_stats)
    sub.add_parser("health", help="Run the health check").set_defaults(func=cmd_health)
    sub.add_parser("maintenance", help="Expire sessions, scrub old contact data, prune the queue").set_defaults(func=cmd_maintenance)
    sub.add_parser("worker", help="Run the queue worker in the foreground").set_defaults(func=cmd_worker)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
