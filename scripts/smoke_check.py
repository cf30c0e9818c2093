#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import time
import urllib.error
import urllib.request
from datetime import datetime, timezone


class ApiClient:
    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip('/')

    def request(self, path: str, payload: dict | None = None):
        data = json.dumps(payload).encode('utf-8') if payload is not None else None
        req = urllib.request.Request(
            url=f'{self.base_url}{path}',
            method='POST' if data is not None else 'GET',
            data=data,
            headers={'Content-Type': 'application/json', 'Accept': 'application/json'}
        )
        with urllib.request.urlopen(req, timeout=10) as resp:
            return json.load(resp)

    def field(self, path: str, name: str):
        try:
            return self.request(path).get(name)
        except (urllib.error.URLError, ConnectionError, TimeoutError, ValueError):
            return None


def await_field(client: ApiClient, path: str, name: str, expected: str, *, deadline: float, interval: float) -> None:
    seen = None
    while time.monotonic() < deadline:
        seen = client.field(path, name)
        if seen == expected:
            return
        time.sleep(interval)
    raise TimeoutError(f'{path} never reported {name}={expected} (last seen {seen!r})')


def main() -> None:
    parser = argparse.ArgumentParser(description='Bootstrap the indexer API and check it starts listening')
    parser.add_argument('--api-base', default='http://localhost:8000', help='Indexer API base URL')
    parser.add_argument('--timeout', type=int, default=120, help='Timeout seconds')
    parser.add_argument('--compliance', required=True, help='Compliance registry address')
    parser.add_argument('--token', required=True, help='Asset token address')
    parser.add_argument('--oracle', required=True, help='Price oracle address')
    parser.add_argument('--dex', required=True, help='DEX address')
    parser.add_argument('--nft', default=None, help='NFT marketplace address')
    args = parser.parse_args()

    client = ApiClient(args.api_base)
    deadline = time.monotonic() + args.timeout

    print('[check] waiting for API readiness...')
    await_field(client, '/health/ready', 'status', 'ready', deadline=deadline, interval=2)

    payload = {
        'complianceAddress': args.compliance,
        'tokenAddress': args.token,
        'oracleAddress': args.oracle,
        'dexAddress': args.dex
    }
    if args.nft:
        payload['nftAddress'] = args.nft

    print('[check] bootstrapping contracts...')
    client.request('/init-contracts', payload)

    await_field(client, '/health', 'subscriber', 'listening', deadline=deadline, interval=1)
    print('[check] subscriber listening')

    print(
        json.dumps(
            {
                'status': 'ok',
                'checked_at': datetime.now(timezone.utc).isoformat(),
                'api_base': client.base_url,
                'stats': client.request('/stats'),
                'prices': client.request('/prices')
            },
            indent=2
        )
    )


if __name__ == '__main__':
    main()
