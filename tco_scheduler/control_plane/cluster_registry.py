"""
tco_scheduler/control_plane/cluster_registry.py
────────────────────────────────────────────────
ClusterRegistry: the authoritative, thread-safe record of every known node.

What it owns
─────────────
For each node: its declared spec (capacity, prices, locality), how much of
that capacity is currently reserved, the free capacity it last reported, its
last heartbeat, and its liveness. Nothing else in the scheduler holds
mutable node state. Callers get frozen Node copies or a ClusterSnapshot.

Locking
────────
  _members_lock   → guards the node_id → entry map (registration, lookups).
  entry.lock      → one per node; guards that node's counters and liveness.

Lock order is always members → node. Single-node operations (reserve,
release, heartbeat) take the members lock only long enough to find the
entry, then work under the node lock alone, so traffic on different nodes
never contends. snapshot() takes the members lock and then every node lock
in sorted id order, which yields a consistent cut: no node in a snapshot is
ever observed half-updated.

Reservations are tracked per AssignmentToken
──────────────────────────────────────────────
reserve() returns a token; release() takes it back. Eviction revokes every
token on the node at once and zeroes its reservation. A job that finishes on
a node *after* the node was evicted then calls release() with a revoked
token. That is a legitimate race, answered with False, not an error.
A token the registry never issued, or a release that would drive a counter
below zero, is a bookkeeping bug and raises ReservationInvariantError.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from tco_scheduler.shared.models import (
    AssignmentToken,
    ClusterSnapshot,
    Node,
    NodeLiveness,
    NodeSpec,
    Resources,
    utc_now,
)

logger = logging.getLogger(__name__)


# ── Exceptions ─────────────────────────────────────────────────────────────────

class UnknownNodeError(KeyError):
    """Raised when an operation names a node that was never registered."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(node_id)

    def __str__(self) -> str:
        return f"Unknown node {self.node_id!r}"


class CapacityExceededError(Exception):
    """
    Raised by reserve() when the node cannot take the request.

    Either some resource dimension would exceed total capacity, or the node
    is not ACTIVE. No state is mutated. The service treats this as a lost
    race and retries placement against a fresh snapshot.
    """

    def __init__(self, node_id: str, reason: str) -> None:
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Cannot reserve on node {node_id!r}: {reason}")


class ReservationInvariantError(AssertionError):
    """Reservation bookkeeping is inconsistent. Never caught by the scheduler."""


# ── Internal per-node record ───────────────────────────────────────────────────

class _NodeEntry:
    """Mutable registry-private state for one node. Never leaves this module."""

    __slots__ = (
        "spec", "lock", "reserved", "reported_free",
        "last_heartbeat", "liveness", "tokens", "revoked",
    )

    def __init__(self, spec: NodeSpec, now: datetime) -> None:
        self.spec = spec
        self.lock = threading.Lock()
        self.reserved = Resources()
        self.reported_free: Optional[Resources] = None
        self.last_heartbeat = now
        self.liveness = NodeLiveness.ACTIVE
        self.tokens: Dict[str, Resources] = {}
        self.revoked: Set[str] = set()

    def to_node(self) -> Node:
        """Frozen copy. Caller must hold self.lock."""
        return Node(
            **self.spec.model_dump(),
            reserved=self.reserved,
            reported_free=self.reported_free,
            last_heartbeat=self.last_heartbeat,
            liveness=self.liveness,
            active_reservations=len(self.tokens),
        )


class ClusterRegistry:
    """
    Owner of all node state.

    Public API:
        register_node(spec)            → node_id
        heartbeat(node_id, free)       → None
        snapshot()                     → ClusterSnapshot
        reserve(node_id, request)      → AssignmentToken
        release(token)                 → bool
        is_reserved(token)             → bool
        evict_stale(timeout_s, ...)    → Set[node_id]
        get_node(node_id)              → Node
        list_nodes()                   → List[Node]

    Args:
        clock: Returns the current UTC time. Injected by tests to drive
               heartbeat ages without sleeping.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._members_lock = threading.Lock()
        self._entries: Dict[str, _NodeEntry] = {}

    # ── Membership ─────────────────────────────────────────────────────────────

    def register_node(self, spec: NodeSpec) -> str:
        """
        Add a node, or refresh an existing one.

        Idempotent by node_id. Re-registration replaces the declared
        attributes, refreshes the heartbeat and marks the node ACTIVE, but
        keeps every current reservation.

        Raises:
            CapacityExceededError: if the new capacity is smaller than what is
                                   already reserved on the node.
        """
        now = self._clock()
        with self._members_lock:
            entry = self._entries.get(spec.node_id)
            if entry is None:
                self._entries[spec.node_id] = _NodeEntry(spec, now)
                logger.info(
                    "Registered node %s at %s (cpu=%.1f mem=%.1fGB gpu=%d $%.4f/hr%s)",
                    spec.node_id, spec.location,
                    spec.capacity.cpu_cores, spec.capacity.memory_gb,
                    spec.capacity.gpu_count, spec.price_per_hour,
                    ", on-premise" if spec.on_premise else "",
                )
                return spec.node_id

            with entry.lock:
                if not entry.reserved.fits_within(spec.capacity):
                    raise CapacityExceededError(
                        spec.node_id,
                        "re-registered capacity is below current reservations",
                    )
                entry.spec = spec
                entry.last_heartbeat = now
                entry.liveness = NodeLiveness.ACTIVE
        logger.info("Re-registered node %s (reservations preserved)", spec.node_id)
        return spec.node_id

    def heartbeat(
        self, node_id: str, reported_free: Optional[Resources] = None
    ) -> None:
        """
        Record a heartbeat: refresh the timestamp and mark the node ACTIVE.

        reported_free, when given, is what the node itself sees as free. It
        feeds the load estimate used by the latency model; it never changes
        reservations.

        Raises:
            UnknownNodeError: if node_id was never registered.
        """
        entry = self._entry(node_id)
        with entry.lock:
            previous = entry.liveness
            entry.last_heartbeat = self._clock()
            entry.liveness = NodeLiveness.ACTIVE
            if reported_free is not None:
                entry.reported_free = reported_free
        if previous != NodeLiveness.ACTIVE:
            logger.info("Node %s back to ACTIVE (was %s)", node_id, previous.value)

    # ── Reads ──────────────────────────────────────────────────────────────────

    def snapshot(self) -> ClusterSnapshot:
        """Consistent point-in-time copy of every node, sorted by node_id."""
        with self._members_lock:
            entries = [self._entries[k] for k in sorted(self._entries)]
            with contextlib.ExitStack() as stack:
                for entry in entries:
                    stack.enter_context(entry.lock)
                nodes = tuple(entry.to_node() for entry in entries)
                taken_at = self._clock()
        return ClusterSnapshot(taken_at=taken_at, nodes=nodes)

    def get_node(self, node_id: str) -> Node:
        entry = self._entry(node_id)
        with entry.lock:
            return entry.to_node()

    def list_nodes(self) -> List[Node]:
        return list(self.snapshot().nodes)

    @property
    def node_count(self) -> int:
        with self._members_lock:
            return len(self._entries)

    # ── Reservations ───────────────────────────────────────────────────────────

    def reserve(self, node_id: str, request: Resources) -> AssignmentToken:
        """
        Atomically add request to the node's reservation.

        Succeeds if and only if the node is ACTIVE and, in every dimension,
        reserved + request ≤ capacity. Otherwise nothing changes.

        Raises:
            UnknownNodeError:      node_id was never registered.
            CapacityExceededError: node not ACTIVE, or request does not fit.
        """
        amount = Resources(
            cpu_cores=request.cpu_cores,
            memory_gb=request.memory_gb,
            gpu_count=request.gpu_count,
        )
        entry = self._entry(node_id)
        with entry.lock:
            if entry.liveness != NodeLiveness.ACTIVE:
                raise CapacityExceededError(node_id, f"node is {entry.liveness.value}")
            proposed = entry.reserved.plus(amount)
            if not proposed.fits_within(entry.spec.capacity):
                raise CapacityExceededError(
                    node_id,
                    f"request cpu={amount.cpu_cores} mem={amount.memory_gb}GB "
                    f"gpu={amount.gpu_count} exceeds free capacity",
                )
            token = AssignmentToken(
                token_id=uuid.uuid4().hex, node_id=node_id, resources=amount
            )
            entry.tokens[token.token_id] = amount
            entry.reserved = proposed

        logger.debug(
            "Reserved on %s: cpu=%.2f mem=%.2fGB gpu=%d (token %s)",
            node_id, amount.cpu_cores, amount.memory_gb, amount.gpu_count,
            token.token_id[:8],
        )
        return token

    def release(self, token: AssignmentToken) -> bool:
        """
        Atomically return a reservation to the node.

        Returns:
            True  if capacity was released.
            False if eviction already revoked this token (nothing to release).

        Raises:
            UnknownNodeError:          token names an unregistered node.
            ReservationInvariantError: token was never issued, was already
                                       released, or would underflow a counter.
        """
        entry = self._entry(token.node_id)
        with entry.lock:
            if token.token_id in entry.revoked:
                entry.revoked.discard(token.token_id)
                logger.debug(
                    "Release of revoked token %s on %s ignored",
                    token.token_id[:8], token.node_id,
                )
                return False

            amount = entry.tokens.get(token.token_id)
            if amount is None:
                raise ReservationInvariantError(
                    f"Token {token.token_id} is not an active reservation on "
                    f"node {token.node_id!r}"
                )
            try:
                remaining = entry.reserved.minus(amount)
            except ValidationError as exc:
                raise ReservationInvariantError(
                    f"Releasing token {token.token_id} would drive node "
                    f"{token.node_id!r} reservation below zero"
                ) from exc
            del entry.tokens[token.token_id]
            entry.reserved = remaining

        logger.debug("Released token %s on %s", token.token_id[:8], token.node_id)
        return True

    def is_reserved(self, token: AssignmentToken) -> bool:
        """
        True while token still holds capacity on its node.

        False once it was released, or revoked by an eviction that ran
        between reserve() and the caller recording the assignment.
        """
        entry = self._entry(token.node_id)
        with entry.lock:
            return token.token_id in entry.tokens

    # ── Liveness ───────────────────────────────────────────────────────────────

    def evict_stale(
        self,
        timeout_s: float,
        now: Optional[datetime] = None,
        suspect_after_s: Optional[float] = None,
    ) -> Set[str]:
        """
        Evict every node whose heartbeat is older than timeout_s.

        Evicted nodes have all reservations revoked (reserved drops to zero),
        so a subsequent snapshot() reports their full capacity as free again.
        Nodes older than suspect_after_s (but not yet timed out) are marked
        SUSPECTED and stop receiving placements.

        Each node is examined under its own lock, so an eviction is atomic
        with respect to concurrent reserve()/release() on that node.

        Returns:
            The node_ids evicted by *this* call (already-evicted nodes are not
            reported again).
        """
        now = now or self._clock()
        with self._members_lock:
            entries = sorted(self._entries.items())

        evicted: Set[str] = set()
        for node_id, entry in entries:
            with entry.lock:
                if entry.liveness == NodeLiveness.EVICTED:
                    continue
                age_s = (now - entry.last_heartbeat).total_seconds()
                if age_s > timeout_s:
                    revoked = len(entry.tokens)
                    entry.liveness = NodeLiveness.EVICTED
                    entry.revoked.update(entry.tokens)
                    entry.tokens.clear()
                    entry.reserved = Resources()
                    evicted.add(node_id)
                    logger.warning(
                        "Evicted node %s: heartbeat age %.1fs > %.1fs, "
                        "%d reservation(s) revoked",
                        node_id, age_s, timeout_s, revoked,
                    )
                elif (
                    suspect_after_s is not None
                    and age_s > suspect_after_s
                    and entry.liveness == NodeLiveness.ACTIVE
                ):
                    entry.liveness = NodeLiveness.SUSPECTED
                    logger.info(
                        "Node %s SUSPECTED: heartbeat age %.1fs", node_id, age_s
                    )
        return evicted

    # ── Private helpers ────────────────────────────────────────────────────────

    def _entry(self, node_id: str) -> _NodeEntry:
        with self._members_lock:
            entry = self._entries.get(node_id)
        if entry is None:
            raise UnknownNodeError(node_id)
        return entry

    def __repr__(self) -> str:
        return f"ClusterRegistry(nodes={self.node_count})"
