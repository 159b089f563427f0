"""
Batch runner — renew every configured certificate label.

Labels are dispatched on a thread pool and each one is isolated: an error
for one label is recorded in its outcome and never aborts the others.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from issuer.client import Client
from issuer.locking import base_path_lock

logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    updated: bool = False
    error: Optional[Exception] = None


@dataclass
class BatchSummary:
    updated: int = 0
    errors: int = 0
    skipped: int = 0

    @classmethod
    def from_outcomes(cls, outcomes: dict[str, BatchOutcome]) -> "BatchSummary":
        updated = sum(1 for o in outcomes.values() if o.updated)
        errors = sum(1 for o in outcomes.values() if o.error is not None)
        return cls(updated=updated, errors=errors, skipped=len(outcomes) - updated - errors)


def _domains(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def each_certificate(config: Any) -> list[tuple[str, list[str]]]:
    """
    Normalize a certificate configuration into ``(label, domains)`` pairs.

    Accepted shapes:
      {"certificates": {...}}                 — unwrapped first
      {"key1": ["a.com", "www.a.com"], ...}   — label → domain(s)
      ["a.com", ["b.com", "www.b.com"]]       — label is the first domain

    A label that appears again is dropped with a warning; the first wins.
    """
    if isinstance(config, dict) and "certificates" in config:
        config = config["certificates"]
    if isinstance(config, dict):
        pairs = [(str(label), _domains(value)) for label, value in config.items()]
    elif isinstance(config, (list, tuple)):
        pairs = [(domains[0], domains) for domains in map(_domains, config) if domains]
    else:
        return []

    unique: dict[str, list[str]] = {}
    for label, domains in pairs:
        if label in unique:
            logger.warning("Duplicate certificate label %s ignored (domains %s)", label, domains)
            continue
        unique[label] = domains
    return list(unique.items())


def renew_one(client: Client, label: str, domains: list[str]) -> BatchOutcome:
    """Renew *label* if it is expired; never raises."""
    try:
        if not client.is_expired(label):
            logger.info("Certificate %s is still valid, going back to bed", label)
            return BatchOutcome(updated=False)
        client.generate_certificate(label, domains)
    except Exception as exc:
        logger.error("Updating certificate %s failed: %s", label, exc)
        return BatchOutcome(error=exc)
    logger.info("Certificate %s updated", label)
    return BatchOutcome(updated=True)


def run_batch(
    client: Client,
    certificates: Any,
    workers: int = 4,
) -> dict[str, BatchOutcome]:
    """
    Initialize *client* and renew every label in *certificates*.

    Returns ``{label: BatchOutcome}`` in configuration order.  Errors from
    ``client.init()`` are fatal and propagate.
    """
    pairs: Iterable[tuple[str, list[str]]] = each_certificate(certificates)
    client.init()
    try:
        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            futures = {
                label: pool.submit(renew_one, client, label, domains)
                for label, domains in pairs
            }
            outcomes = {label: future.result() for label, future in futures.items()}
    finally:
        with base_path_lock(client.store.base_path):
            client.clear()

    summary = BatchSummary.from_outcomes(outcomes)
    logger.info(
        "Batch complete — updated: %d | errors: %d | skipped: %d",
        summary.updated,
        summary.errors,
        summary.skipped,
    )
    return outcomes
