"""Fetch and print the mint status for one story hash."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for mint status checks."""

    parser = argparse.ArgumentParser(description="Query POST /mints/check for one story hash.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--story-hash", required=True)
    parser.add_argument("--wallet", required=True, help="Author wallet address")
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.api_url}/mints/check",
        json={"storyHash": args.story_hash, "authorAddress": args.wallet},
        timeout=10.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
