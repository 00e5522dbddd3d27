"""CLI for bulk processing operations and debugging.

Usage:
    python -m bulkops.cli list-requests [--status failed] [--limit 20]
    python -m bulkops.cli request-errors --request-id <uuid>
    python -m bulkops.cli cleanup-uploads [--minutes 120]
    python -m bulkops.cli reconcile
    python -m bulkops.cli clear-slots --user-id <uuid>
"""

from __future__ import annotations

import argparse
import sys
import uuid

from sqlalchemy import select

from bulkops.database import sync_session_factory
from bulkops.models import *  # noqa: F401, F403
from bulkops.models.bulk_request import BulkProcessingRequest, BulkProcessingStatus


def list_requests(args: argparse.Namespace) -> None:
    with sync_session_factory() as db:
        query = select(BulkProcessingRequest).order_by(BulkProcessingRequest.created_at.desc()).limit(args.limit)
        if args.status:
            query = query.where(BulkProcessingRequest.status == BulkProcessingStatus(args.status))
        requests = db.execute(query).scalars().all()

        if not requests:
            print("No bulk processing requests found.")
            return

        print(f"{'ID':<38} {'Type':<18} {'Status':<12} {'Rows':>14} {'Failed':>8} {'File'}")
        print("-" * 120)
        for r in requests:
            total = "?" if r.total_rows is None else str(r.total_rows)
            rows = f"{r.processed_rows}/{total}"
            print(f"{str(r.id):<38} {r.type.value:<18} {r.status.value:<12} {rows:>14} {r.failed_rows:>8} {r.file_name}")
        print(f"\nTotal: {len(requests)} request(s)")


def request_errors(args: argparse.Namespace) -> None:
    with sync_session_factory() as db:
        request = db.get(BulkProcessingRequest, uuid.UUID(args.request_id))
        if request is None:
            print(f"Error: bulk request '{args.request_id}' not found")
            sys.exit(1)

        print(f"Request:  {request.id}")
        print(f"File:     {request.file_name}")
        print(f"Status:   {request.status.value}")
        print(f"Rows:     {request.processed_rows} processed, {request.failed_rows} failed")
        print(f"Error:    {request.error_message or '(none)'}")
        logs = request.row_logs or []
        if not logs:
            return
        print()
        for entry in logs[: args.limit]:
            print(f"  row {entry.get('row_number'):>6} [{entry.get('outcome')}] {entry.get('message', '')}")
        if len(logs) > args.limit:
            print(f"  ... {len(logs) - args.limit} more")


def cleanup_uploads(args: argparse.Namespace) -> None:
    from bulkops.services.concurrency import UPLOADS_SCOPE, ConcurrencyLimiter
    from bulkops.services.redis_client import get_redis
    from bulkops.services.storage import build_storage_provider
    from bulkops.services.upload_service import UploadSessionManager

    with sync_session_factory() as db:
        manager = UploadSessionManager(
            db, build_storage_provider(), ConcurrencyLimiter(get_redis(), scope=UPLOADS_SCOPE)
        )
        cleaned = manager.cleanup_expired_uploads(args.minutes)
    print(f"Cleaned {cleaned} expired upload(s)")


def reconcile(_args: argparse.Namespace) -> None:
    from bulkops.plugins import registry
    from bulkops.services.bulk_service import fail_stalled_requests, reconcile_stuck_cancelling
    from bulkops.services.queue_bridge import build_queue_bridge
    from bulkops.tasks.bulk_tasks import build_dispatcher

    registry.discover()
    bridge = build_queue_bridge()
    dispatcher = build_dispatcher()
    with sync_session_factory() as db:
        cancelled = reconcile_stuck_cancelling(db, bridge, dispatcher)
        failed = fail_stalled_requests(db, bridge, dispatcher)
    print(f"Finished {cancelled} stuck cancellation(s), failed {failed} stalled request(s)")


def clear_slots(args: argparse.Namespace) -> None:
    from bulkops.services.concurrency import BULK_JOBS_SCOPE, UPLOADS_SCOPE, ConcurrencyLimiter
    from bulkops.services.redis_client import get_redis

    user_id = uuid.UUID(args.user_id)
    client = get_redis()
    for scope in (UPLOADS_SCOPE, BULK_JOBS_SCOPE):
        ConcurrencyLimiter(client, scope=scope).clear_user_slots(user_id)
    print(f"Cleared concurrency slots for user {user_id}")


def main() -> None:
    parser = argparse.ArgumentParser(prog="bulkops.cli", description="BulkOps operations")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # list-requests
    p_list = subparsers.add_parser("list-requests", help="List recent bulk processing requests")
    p_list.add_argument("--status", choices=[s.value for s in BulkProcessingStatus], default=None)
    p_list.add_argument("--limit", type=int, default=20)
    p_list.set_defaults(func=list_requests)

    # request-errors
    p_errors = subparsers.add_parser("request-errors", help="Show a request's error and row logs")
    p_errors.add_argument("--request-id", required=True, help="BulkProcessingRequest UUID")
    p_errors.add_argument("--limit", type=int, default=50)
    p_errors.set_defaults(func=request_errors)

    # cleanup-uploads
    p_cleanup = subparsers.add_parser("cleanup-uploads", help="Abort idle multipart uploads")
    p_cleanup.add_argument("--minutes", type=int, default=None, help="Inactivity threshold")
    p_cleanup.set_defaults(func=cleanup_uploads)

    # reconcile
    p_reconcile = subparsers.add_parser("reconcile", help="Finish stuck cancellations and fail stalled jobs")
    p_reconcile.set_defaults(func=reconcile)

    # clear-slots
    p_clear = subparsers.add_parser("clear-slots", help="Reset a user's concurrency counters")
    p_clear.add_argument("--user-id", required=True)
    p_clear.set_defaults(func=clear_slots)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
