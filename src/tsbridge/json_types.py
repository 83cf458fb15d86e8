from __future__ import annotations

"""JSON value aliases shared by both protocol sides of the bridge.

Frames are decoded into plain JSON objects before they are classified, so
every boundary that hands a message around declares it with these aliases
rather than `Any`.
"""

from typing import TypeAlias


JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
# tsserver messages are keyed by `type`, LSP messages by `jsonrpc`.
JSONObject: TypeAlias = dict[str, JSONValue]
