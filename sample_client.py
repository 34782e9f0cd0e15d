"""
sample_client.py: walk through the Authorization Code + PKCE flow by hand.

Prints an /authorize URL carrying a fresh S256 challenge, then redeems a
code (``mock-code`` by default, which is what the local engine issues)
at /token with the matching verifier.
"""

import argparse
import json
import sys
import urllib.parse

import httpx

import pkce


def build_authorize_url(base_url: str, client_id: str, redirect_uri: str,
                        challenge: str, scope: str = "openid",
                        state: str = "sample-state") -> str:
    params = urllib.parse.urlencode({
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    })
    return f"{base_url.rstrip('/')}/authorize?{params}"


def exchange_code(base_url: str, code: str, client_id: str, redirect_uri: str,
                  verifier: str, client: httpx.Client | None = None) -> httpx.Response:
    body = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "code_verifier": verifier,
    }
    if client is None:
        with httpx.Client(timeout=10.0) as c:
            return c.post(f"{base_url.rstrip('/')}/token", data=body)
    return client.post(f"{base_url.rstrip('/')}/token", data=body)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="PKCE walkthrough against ticketgate")
    parser.add_argument("--base-url", default="http://localhost:3000")
    parser.add_argument("--client-id", default="sample-client")
    parser.add_argument("--redirect-uri", default="http://localhost:9000/cb")
    parser.add_argument("--code", default="mock-code",
                        help="authorization code to redeem")
    args = parser.parse_args(argv)

    pair = pkce.generate_pair()
    print("1) Open the authorize URL in a browser:")
    print(build_authorize_url(args.base_url, args.client_id, args.redirect_uri, pair.challenge))
    print("---")
    print(f"2) Exchanging code={args.code} with the matching verifier...")

    try:
        resp = exchange_code(args.base_url, args.code, args.client_id,
                             args.redirect_uri, pair.verifier)
    except httpx.HTTPError as e:
        print(f"Failed to call token endpoint: {e}", file=sys.stderr)
        return 1

    print(f"Token endpoint response (HTTP {resp.status_code}):")
    try:
        print(json.dumps(resp.json(), indent=2))
    except ValueError:
        print(resp.text)
    return 0 if resp.is_success else 1


if __name__ == "__main__":
    sys.exit(main())
