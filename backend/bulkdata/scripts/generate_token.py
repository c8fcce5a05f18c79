#!/usr/bin/env python3
"""
Generate a bearer token for local testing of secured exports.

Usage:
  python -m bulkdata.scripts.generate_token --scope "system/Patient.rs system/Observation.rs"

  # Use: curl -H "Authorization: Bearer <token>" ...
"""

import argparse
from datetime import timedelta

from bulkdata.core.security import create_access_token


def main(argv=None):
    parser = argparse.ArgumentParser(description='Generate a bulk data access token')
    parser.add_argument('--scope', default='system/*.read', help='Space separated SMART scopes')
    parser.add_argument('--client-id', default='bulk-client', help='Client id claim')
    parser.add_argument('--minutes', type=int, default=60, help='Token lifetime in minutes')
    parser.add_argument('--error', default=None, help='Simulated auth error to embed as "err"')

    args = parser.parse_args(argv)

    claims = {'err': args.error} if args.error else {}
    token = create_access_token(
        scope=args.scope,
        client_id=args.client_id,
        expires_delta=timedelta(minutes=args.minutes),
        **claims,
    )

    print(f'# Scope: {args.scope}')
    print(f'# Token (valid {args.minutes} minutes):')
    print(token)


if __name__ == '__main__':
    main()
