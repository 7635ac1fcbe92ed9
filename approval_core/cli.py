import argparse
import json
import logging
import os
import re
import sys
from typing import List, Optional

import requests

from approval_core.audit.logger import AuditLog, verify_audit_log
from approval_core.audit.query import AuditQuery
from approval_core.config import ApprovalConfig
from approval_core.engine.risk import RiskAssessor, explain_risk_level
from approval_core.engine.types import ProposedAction, TaskContext, TrustRank, parse_ts
from approval_core.errors import ApprovalError
from approval_core.events import EventBus
from approval_core.history.commits import format_commit
from approval_core.history.integrity import verify_repository
from approval_core.history.snapshot import open_store, save_snapshot

DEFAULT_SNAPSHOT = os.path.join('.approvals', 'history.json')
MUTATING = {'branch', 'checkout', 'merge', 'revert', 'tag'}


def _short(commit_id: Optional[str]) -> str:
    return commit_id[:12] if commit_id else '(none)'


def log_command(args, store):
    commits = store.get_log(
        branch=args.branch,
        author=args.author,
        since=parse_ts(args.since) if args.since else None,
        until=parse_ts(args.until) if args.until else None,
        grep=args.grep,
        limit=args.limit,
    )
    if not commits:
        print("No commits.")
        return
    for commit in commits:
        print(format_commit(commit, oneline=args.oneline, show_tags=args.tags))
        if not args.oneline:
            print()


def branch_command(args, store):
    if args.delete:
        store.delete_branch(args.delete, force=args.force)
        print(f"Deleted branch {args.delete}")
        return True
    if args.name:
        branch = store.create_branch(args.name, base=args.base)
        print(f"Created branch {branch.name} at {_short(branch.head)}")
        return True

    current = store.repo.current_branch
    for branch in store.list_branches(merged=args.merged):
        marker = '*' if branch.name == current else ' '
        flags = ' [protected]' if branch.protected else ''
        print(f"{marker} {branch.name:<24} {_short(branch.head)}{flags}")
    return False


def checkout_command(args, store):
    branch = store.checkout_branch(args.name)
    print(f"Switched to branch '{branch.name}'")


def merge_command(args, store):
    target = args.into or store.repo.current_branch
    commit = store.merge_branch(args.source, target, message=args.message)
    print(f"Merged {args.source} into {target}: {commit.short_id}")


def revert_command(args, store):
    commit = store.revert_commit(args.ref, message=args.message, no_commit=args.no_commit)
    if args.no_commit:
        print(format_commit(commit, show_diff=True))
        print("\n(not committed)")
    else:
        print(f"[{store.repo.current_branch} {commit.short_id}] {commit.subject}")


def tag_command(args, store):
    if args.delete:
        store.delete_tag(args.delete)
        print(f"Deleted tag {args.delete}")
        return
    if args.name:
        target = store.create_tag(args.name, args.ref, force=args.force)
        print(f"Tagged {_short(target)} as {args.name}")
        return
    for name, commit_id in store.list_tags().items():
        print(f"{name:<24} {_short(commit_id)}")
    return False


def status_command(args, store):
    status = store.status()
    print(f"On branch {status['current_branch']}")
    print(f"Head: {_short(status['head'])}")
    print(f"Commits on branch: {status['commits']}")
    if status['protected']:
        print("Branch is protected")
    print(f"Open merge requests: {status['open_merge_requests']}")


def show_command(args, store):
    commit = store.get_commit(store.resolve(args.ref))
    print(format_commit(commit, show_diff=True, show_tags=True))


def stats_command(args, store):
    print(json.dumps(store.get_statistics(), indent=2))


def verify_command(args, store, config):
    ok = True
    is_valid, errors = verify_repository(store.repo)
    print(f"History: {'OK' if is_valid else 'INVALID'}")
    for error in errors:
        print(f"  {error}")
    ok = ok and is_valid

    if config.audit_log_path and os.path.exists(config.audit_log_path):
        is_valid, errors = verify_audit_log(config.audit_log_path)
        print(f"Audit log: {'OK' if is_valid else 'INVALID'}")
        for error in errors:
            print(f"  {error}")
        ok = ok and is_valid
    return ok


def audit_command(args, config):
    if not config.audit_log_path:
        print("Error: no audit log configured (use --audit-log or APPROVAL_AUDIT_LOG)")
        return 1
    for event in AuditQuery(config.audit_log_path).filter_events(kind=args.kind, actor=args.actor, limit=args.limit):
        print(f"{event['ts']}  {event['actor']:<6} {event['kind']:<24} {event['description']}")
    return 0


def assess_command(args):
    rank = TrustRank(args.rank) if args.rank else TrustRank.NOVICE
    actions = [
        ProposedAction(kind='edit', description=args.description or '', files=(path,), reversible=not args.irreversible)
        for path in args.files
    ]
    result = RiskAssessor().assess(TaskContext(intent=args.intent or '', trust_rank=rank), actions, args.category)

    print(f"Risk: {result.overall_risk.value} (score {result.score:.2f})")
    print(explain_risk_level(result.overall_risk))
    for factor in result.factors:
        print(f"  {factor.category:<20} {factor.score:5.2f}  {factor.risk.value:<8} {factor.description}")
    print(f"Requires approval: {'yes' if result.requires_approval else 'no'}")
    print(f"Auto-approval eligible: {'yes' if result.auto_approval_eligible else 'no'}")
    for rec in result.recommendations:
        print(f"  - {rec}")


def pending_command(args):
    resp = requests.get(f"{args.url}/requests", timeout=5)
    resp.raise_for_status()
    pending = resp.json().get('requests', [])
    if not pending:
        print("No pending requests.")
        return
    for req in pending:
        print(f"{req['id']}  {req['risk_level']:<8} {req['theme_id']:<28} {req['context']['intent']}")


def respond_command(args):
    payload = {'action': args.action, 'comment': args.comment, 'trust_rank': args.rank}
    resp = requests.post(f"{args.url}/requests/{args.request_id}/respond", json=payload, timeout=5)
    data = resp.json()
    if resp.status_code != 200:
        print(f"Error: {data.get('message', resp.status_code)}")
        return 1
    response = data['response']
    print(f"{args.request_id}: {'approved' if response['approved'] else 'rejected'} ({response['action']})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='approval', description='Approval history CLI')
    parser.add_argument('--snapshot', help=f'Repository snapshot file (default: {DEFAULT_SNAPSHOT})')
    parser.add_argument('--config', help='JSON config file')
    parser.add_argument('--audit-log', help='Audit log file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    log_parser = subparsers.add_parser('log', help='Show commit history')
    log_parser.add_argument('--branch', '-b', help='Only commits on this branch')
    log_parser.add_argument('--author', help='Author substring')
    log_parser.add_argument('--since', help='ISO timestamp lower bound')
    log_parser.add_argument('--until', help='ISO timestamp upper bound')
    log_parser.add_argument('--grep', help='Message regex')
    log_parser.add_argument('--limit', '-n', type=int, help='Maximum number of commits')
    log_parser.add_argument('--oneline', action='store_true', help='One line per commit')
    log_parser.add_argument('--tags', action='store_true', help='Show auto tags')

    branch_parser = subparsers.add_parser('branch', help='List, create or delete branches')
    branch_parser.add_argument('name', nargs='?', help='Branch to create')
    branch_parser.add_argument('--base', help='Commit, tag or branch to start from')
    branch_parser.add_argument('--delete', '-d', metavar='NAME', help='Delete a branch')
    branch_parser.add_argument('--force', '-f', action='store_true', help='Delete even if protected or unmerged')
    branch_parser.add_argument('--merged', action='store_true', help='Only branches merged into the default branch')

    checkout_parser = subparsers.add_parser('checkout', help='Switch branches')
    checkout_parser.add_argument('name', help='Branch name')

    merge_parser = subparsers.add_parser('merge', help='Merge a branch')
    merge_parser.add_argument('source', help='Branch to merge')
    merge_parser.add_argument('--into', help='Target branch (default: current)')
    merge_parser.add_argument('--message', '-m', help='Merge commit message')

    revert_parser = subparsers.add_parser('revert', help='Revert a commit')
    revert_parser.add_argument('ref', help='Commit id, prefix, tag or branch')
    revert_parser.add_argument('--message', '-m', help='Revert commit message')
    revert_parser.add_argument('--no-commit', action='store_true', help='Show the revert without committing')

    tag_parser = subparsers.add_parser('tag', help='List, create or delete tags')
    tag_parser.add_argument('name', nargs='?', help='Tag to create')
    tag_parser.add_argument('ref', nargs='?', help='Commit to tag (default: current head)')
    tag_parser.add_argument('--delete', '-d', metavar='NAME', help='Delete a tag')
    tag_parser.add_argument('--force', '-f', action='store_true', help='Overwrite an existing tag')

    subparsers.add_parser('status', help='Show current branch')

    show_parser = subparsers.add_parser('show', help='Show one commit')
    show_parser.add_argument('ref', help='Commit id, prefix, tag or branch')

    subparsers.add_parser('stats', help='Repository statistics')
    subparsers.add_parser('verify', help='Verify history and audit log integrity')

    audit_parser = subparsers.add_parser('audit', help='Show audit log entries')
    audit_parser.add_argument('--kind', help='Event kind')
    audit_parser.add_argument('--actor', help='HUMAN or SYSTEM')
    audit_parser.add_argument('--limit', '-n', type=int, help='Maximum number of entries')

    assess_parser = subparsers.add_parser('assess', help='Score a proposed change without recording it')
    assess_parser.add_argument('files', nargs='*', help='Affected paths')
    assess_parser.add_argument('--intent', help='What the change is for')
    assess_parser.add_argument('--description', help='Action description')
    assess_parser.add_argument('--rank', choices=[r.value for r in TrustRank], help='Trust rank (default: novice)')
    assess_parser.add_argument('--category', help='Approval category')
    assess_parser.add_argument('--irreversible', action='store_true', help='Mark actions irreversible')

    pending_parser = subparsers.add_parser('pending', help='List pending requests on a running service')
    pending_parser.add_argument('--url', default='http://127.0.0.1:5010', help='Service URL')

    respond_parser = subparsers.add_parser('respond', help='Respond to a pending request on a running service')
    respond_parser.add_argument('request_id', help='Request id')
    respond_parser.add_argument('action', choices=['approve', 'reject', 'trust', 'review'])
    respond_parser.add_argument('--comment', '-c', help='Comment')
    respond_parser.add_argument('--rank', choices=[r.value for r in TrustRank], help='New trust rank (trust only)')
    respond_parser.add_argument('--url', default='http://127.0.0.1:5010', help='Service URL')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [APPROVAL] %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == 'assess':
            assess_command(args)
            return 0
        if args.command == 'pending':
            pending_command(args)
            return 0
        if args.command == 'respond':
            return respond_command(args)

        config = ApprovalConfig.from_file(args.config) if args.config else ApprovalConfig.from_env()
        if args.audit_log:
            config.audit_log_path = args.audit_log
        if args.command == 'audit':
            return audit_command(args, config)

        snapshot = args.snapshot or config.snapshot_path or DEFAULT_SNAPSHOT
        bus = EventBus()
        if config.audit_log_path:
            AuditLog(config.audit_log_path).attach(bus)
        store = open_store(snapshot, config, bus=bus)

        if args.command == 'verify':
            return 0 if verify_command(args, store, config) else 1

        handlers = {
            'log': log_command,
            'branch': branch_command,
            'checkout': checkout_command,
            'merge': merge_command,
            'revert': revert_command,
            'tag': tag_command,
            'status': status_command,
            'show': show_command,
            'stats': stats_command,
        }
        changed = handlers[args.command](args, store)
        if args.command in MUTATING and changed is not False:
            save_snapshot(store, snapshot)
        return 0

    except (ApprovalError, ValueError, re.error) as e:
        print(f"Error: {e}")
        return 1
    except requests.RequestException as e:
        print(f"Error: cannot reach approval service: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
