"""
pNode Crawler - Pod Deduplication

Gossip routinely reports the same pNode more than once (stale entries,
restarted nodes on a new port). Deduplication collapses the raw pod list
to one record per IP and resolves conflicting public key claims.
"""

import dataclasses
import logging

from node_models import Pod

logger = logging.getLogger(__name__)


def deduplicate_pods(pods: list[Pod]) -> dict[str, Pod]:
    """
    Collapse pods to one record per IP.

    - On an IP collision the record with the strictly greater
      last_seen_timestamp wins; a missing timestamp counts as 0, and ties
      keep the record seen first.
    - A pubkey already claimed by a different IP earlier in the batch is
      cleared to None on the later record.

    Returns an insertion-ordered dict of ip -> Pod.
    """
    by_ip: dict[str, Pod] = {}
    claimed: dict[str, str] = {}  # pubkey -> ip

    for pod in pods:
        ip = pod.ip
        if not ip:
            continue

        if pod.pubkey:
            owner = claimed.get(pod.pubkey)
            if owner is not None and owner != ip:
                logger.debug(f"Duplicate pubkey for {ip} (claimed by {owner}), clearing")
                pod = dataclasses.replace(pod, pubkey=None)

        existing = by_ip.get(ip)
        if existing is None or (pod.last_seen_timestamp or 0) > (existing.last_seen_timestamp or 0):
            by_ip[ip] = pod
            if pod.pubkey:
                claimed.setdefault(pod.pubkey, ip)

    return by_ip
