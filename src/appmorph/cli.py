from __future__ import annotations

import argparse
import json
import sys

import httpx

from appmorph.config import RESET_TO_ORIGINAL, USER_ID_HEADER


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='appmorph', description='Submit and manage chained change requests')
    parser.add_argument('--api-base', default='http://127.0.0.1:3002', help='appmorph API base URL')
    parser.add_argument('--user', default='', help='User id sent as the x-appmorph-user-id header')

    sub = parser.add_subparsers(dest='command', required=True)

    task = sub.add_parser('task', help='Create a task')
    task.add_argument('prompt', help='Change request in plain language')
    task.add_argument('--group', default='', help='Optional group id')
    task.add_argument('--follow', action='store_true', help='Stream progress until the task finishes')

    status = sub.add_parser('status', help='Get task status')
    status.add_argument('task_id')

    abort = sub.add_parser('abort', help='Request a running task to stop')
    abort.add_argument('task_id')

    sub.add_parser('tasks', help='List tasks')
    sub.add_parser('chain', help='Show your task chain')

    rollback = sub.add_parser('rollback', help='Roll the chain back to a session')
    target = rollback.add_mutually_exclusive_group(required=True)
    target.add_argument('session_id', nargs='?', help='Session id to keep as the new head')
    target.add_argument('--reset', action='store_true', help='Discard the whole chain')
    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _follow(client: httpx.Client, base: str, task_id: str) -> int:
    """Print SSE events for *task_id*; exit code reflects the outcome."""
    outcome = 1
    event_name = ''
    with client.stream('GET', f'{base}/api/task/{task_id}/stream', timeout=None) as response:
        if response.status_code >= 400:
            response.read()
            print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
            return 1
        for line in response.iter_lines():
            if line.startswith('event:'):
                event_name = line[len('event:'):].strip()
                continue
            if not line.startswith('data:'):
                continue
            data = json.loads(line[len('data:'):].strip())
            if event_name == 'progress':
                print(f"[{data.get('type', 'log')}] {data.get('content', '')}")
            elif event_name == 'complete':
                _print_json(data)
                outcome = 0 if data.get('success') else 1
                break
            elif event_name == 'error':
                print(f"error: {data.get('message', '')}", file=sys.stderr)
                break
    return outcome


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')
    headers = {USER_ID_HEADER: args.user} if args.user else {}

    with httpx.Client(timeout=60, headers=headers) as client:
        if args.command == 'task':
            response = client.post(
                f'{base}/api/task',
                json={'prompt': args.prompt, 'groupId': (args.group.strip() or None)},
            )
            if args.follow and response.status_code < 400:
                _print_json(response.json())
                return _follow(client, base, response.json()['taskId'])
        elif args.command == 'status':
            response = client.get(f'{base}/api/task/{args.task_id}')
        elif args.command == 'abort':
            response = client.post(f'{base}/api/task/{args.task_id}/abort')
        elif args.command == 'tasks':
            response = client.get(f'{base}/api/tasks')
        elif args.command == 'chain':
            response = client.get(f'{base}/api/chain')
        elif args.command == 'rollback':
            target = RESET_TO_ORIGINAL if args.reset else args.session_id
            response = client.post(f'{base}/api/chain/rollback', json={'target_session_id': target})
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
