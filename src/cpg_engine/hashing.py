# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Content hashes, node keys and version checksums."""

import hashlib
from typing import Iterable, Tuple


def content_hash(source_text: str) -> str:
    """SHA-256 hex digest of an entity's exact source span."""
    return hashlib.sha256(source_text.encode("utf-8")).hexdigest()


def make_node_key(file_path: str, start_line: int, name: str) -> str:
    """Build the stable identity ``{file_path}:{start_line}:{name}``.

    ``file_path`` must already be relative to the project root with POSIX
    separators, otherwise keys differ between machines.
    """
    return f"{file_path}:{start_line}:{name}"


def edge_key(source_key: str, target_key: str, edge_type: str) -> str:
    """Storage-independent identity of an edge."""
    return f"{source_key} -[{edge_type}]-> {target_key}"


def version_checksum(
    node_hashes: Iterable[Tuple[str, str]],
    edge_keys: Iterable[str],
) -> str:
    """Checksum of a version from its (node_key, content_hash) pairs and edge keys.

    Input order does not matter; two versions with the same membership get
    the same checksum.
    """
    digest = hashlib.sha256()
    for key, node_hash in sorted(node_hashes):
        digest.update(f"N|{key}|{node_hash}\n".encode("utf-8"))
    for key in sorted(edge_keys):
        digest.update(f"E|{key}\n".encode("utf-8"))
    return digest.hexdigest()
