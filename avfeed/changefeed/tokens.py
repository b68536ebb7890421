"""
Continuation token codec.

Tokens use the store's composite (V2) continuation format:

    {"V":2,"Rid":"<rid>","Continuation":[{"FeedRange":{...},"State":{...}}]}

The minted layout must match what the store's feed reader parses, so it is
serialized with fixed key order and no whitespace.
"""

import json
import re
from dataclasses import dataclass
from typing import List, Dict, Any

from .errors import ParseError, TokenError, TokenMismatchError

TOKEN_VERSION = 2
FEED_RANGE_TYPE = "Effective Partition Key Range"
FULL_RANGE_MIN = ""
FULL_RANGE_MAX = "FF"
STATE_TYPE = "continuation"

# dbs/<db rid>/colls/<container rid>/...
_SELF_LINK_PATTERN = re.compile(r"dbs/[^/]+/colls/(?P<container_rid>[^/]+)/")


@dataclass(frozen=True)
class FeedRangeState:
    """Position within one effective partition key range."""
    min: str
    max: str
    state_type: str
    value: str


@dataclass(frozen=True)
class TokenState:
    """Decoded view of a continuation token."""
    version: int
    resource_id: str
    ranges: List[FeedRangeState]


def mint_start_token(resource_id: str, starting_sequence: int = 0) -> str:
    """
    Build a token anchored at a logical sequence number over the full range.

    Sequence 0 is the earliest position still inside the retention window.

    Raises:
        ValueError: If resource_id is empty or starting_sequence is negative
    """
    if not resource_id:
        raise ValueError("resource_id must be non-empty")
    if starting_sequence < 0:
        raise ValueError("starting_sequence must be non-negative")

    token = {
        "V": TOKEN_VERSION,
        "Rid": resource_id,
        "Continuation": [
            {
                "FeedRange": {
                    "type": FEED_RANGE_TYPE,
                    "value": {"min": FULL_RANGE_MIN, "max": FULL_RANGE_MAX},
                },
                "State": {
                    "type": STATE_TYPE,
                    "value": json.dumps(str(int(starting_sequence))),
                },
            }
        ],
    }
    return json.dumps(token, separators=(",", ":"), ensure_ascii=False)


def extract_resource_id(self_link: str) -> str:
    """
    Return the container resource id from a self link.

    Example:
        >>> extract_resource_id("dbs/AbC=/colls/AbCdEf=/")
        'AbCdEf='

    Raises:
        ParseError: If the link does not contain a dbs/../colls/../ segment
    """
    match = _SELF_LINK_PATTERN.search(self_link or "")
    if not match:
        raise ParseError(f"Cannot extract container resource id from self link {self_link!r}")
    return match.group("container_rid")


def parse_token(token: str) -> TokenState:
    """
    Decode a V2 continuation token.

    Raises:
        TokenError: If the token is not a well-formed V2 token
    """
    try:
        raw = json.loads(token)
    except (TypeError, ValueError) as e:
        raise TokenError(f"Continuation token is not valid JSON: {e}") from e

    if not isinstance(raw, dict) or "Rid" not in raw or "Continuation" not in raw:
        raise TokenError("Continuation token is missing Rid/Continuation")

    try:
        ranges = [_parse_range(entry) for entry in raw["Continuation"]]
        return TokenState(
            version=int(raw.get("V", 0)),
            resource_id=str(raw["Rid"]),
            ranges=ranges,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise TokenError(f"Malformed continuation entry: {e}") from e


def _parse_range(entry: Dict[str, Any]) -> FeedRangeState:
    bounds = entry["FeedRange"]["value"]
    state = entry["State"]
    return FeedRangeState(
        min=bounds["min"],
        max=bounds["max"],
        state_type=state["type"],
        value=state["value"],
    )


def token_resource_id(token: str) -> str:
    return parse_token(token).resource_id


def ensure_token_for(token: str, resource_id: str) -> None:
    """
    Check that a token was minted against the given container.

    Raises:
        TokenError: If the token cannot be decoded
        TokenMismatchError: If it belongs to another container
    """
    found = token_resource_id(token)
    if found != resource_id:
        raise TokenMismatchError(resource_id, found)


def is_composite_token(token: str) -> bool:
    """True if the token decodes as a V2 composite token."""
    try:
        parse_token(token)
    except TokenError:
        return False
    return True
