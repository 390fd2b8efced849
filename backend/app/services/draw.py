"""
Pure, side-effect free draw math. Anything here can be re-run by a third
party from published data (seed, seed hash, snapshot ranges, proof fields).

Derivation:
    combined = "{server_seed}:{snapshot_digest}:{draw_number}:{excluded ids, sorted, comma-joined}"
    derived_hash = sha256(combined)
    value = int(derived_hash, 16) mod eligible_tickets
    winner = entry whose compacted range [start, end) contains value
"""
from __future__ import annotations
import hashlib
import secrets
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Iterable, Sequence

SEED_BYTES = 32  # 256-bit server seed


@dataclass(frozen=True)
class TicketRange:
    entry_id: str
    user_id: str
    start: int
    end: int  # exclusive

    @property
    def tickets(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class DrawResult:
    combined_entropy_input: str
    derived_hash: str
    derived_random_value: int
    eligible_tickets: int
    winner: TicketRange


@dataclass
class VerificationReport:
    valid: bool
    seed_hash_ok: bool
    snapshot_digest_ok: bool
    derivation_ok: bool
    winner_ok: bool
    recomputed_winner_entry_id: str | None = None
    errors: list[str] = field(default_factory=list)


def generate_seed() -> str:
    return secrets.token_hex(SEED_BYTES)


def hash_seed(server_seed: str) -> str:
    return hashlib.sha256(server_seed.encode("utf-8")).hexdigest()


def build_ranges(entries: Iterable[tuple[str, str, int]]) -> list[TicketRange]:
    """
    Assign contiguous ticket ranges in iteration order.
    ``entries`` yields (entry_id, user_id, ticket_count); caller supplies the draw order.
    """
    out: list[TicketRange] = []
    cursor = 0
    for entry_id, user_id, count in entries:
        count = int(count)
        if count < 1:
            raise ValueError(f"ticket_count must be >= 1 (entry {entry_id})")
        out.append(TicketRange(str(entry_id), str(user_id), cursor, cursor + count))
        cursor += count
    return out


def snapshot_digest(ranges: Sequence[TicketRange]) -> str:
    h = hashlib.sha256()
    for r in ranges:
        h.update(f"{r.entry_id}:{r.user_id}:{r.start}:{r.end}\n".encode("utf-8"))
    return h.hexdigest()


def check_coverage(ranges: Sequence[TicketRange]) -> int:
    """Return total tickets; raise if ranges are not a gapless, non-overlapping cover of [0, total)."""
    cursor = 0
    for r in ranges:
        if r.start != cursor or r.end <= r.start:
            raise ValueError(f"range for entry {r.entry_id} breaks coverage at {cursor}")
        cursor = r.end
    return cursor


def compact_ranges(ranges: Sequence[TicketRange], excluded: Iterable[str]) -> list[TicketRange]:
    """Drop excluded entries and renumber the rest contiguously, keeping snapshot order."""
    skip = {str(e) for e in excluded}
    return build_ranges((r.entry_id, r.user_id, r.tickets) for r in ranges if r.entry_id not in skip)


def combined_input(server_seed: str, digest: str, draw_number: int, excluded: Iterable[str]) -> str:
    return f"{server_seed}:{digest}:{int(draw_number)}:{','.join(sorted(str(e) for e in excluded))}"


def derive(combined: str, total_tickets: int) -> tuple[str, int]:
    if total_tickets <= 0:
        raise ValueError("total_tickets must be > 0")
    digest = hashlib.sha256(combined.encode("utf-8")).hexdigest()
    return digest, int(digest, 16) % total_tickets


def find_winner(ranges: Sequence[TicketRange], value: int) -> TicketRange:
    """Binary search over range starts; ranges are contiguous so exactly one matches."""
    starts = [r.start for r in ranges]
    idx = bisect_right(starts, value) - 1
    if idx < 0 or not (ranges[idx].start <= value < ranges[idx].end):
        raise ValueError(f"value {value} outside ticket ranges")
    return ranges[idx]


def compute_draw(server_seed: str, ranges: Sequence[TicketRange], draw_number: int = 1,
                 excluded: Iterable[str] = ()) -> DrawResult:
    excluded = sorted({str(e) for e in excluded})
    digest = snapshot_digest(ranges)
    eligible = compact_ranges(ranges, excluded)
    total = check_coverage(eligible)
    if total <= 0:
        raise ValueError("no eligible tickets")
    combined = combined_input(server_seed, digest, draw_number, excluded)
    derived_hash, value = derive(combined, total)
    return DrawResult(
        combined_entropy_input=combined,
        derived_hash=derived_hash,
        derived_random_value=value,
        eligible_tickets=total,
        winner=find_winner(eligible, value),
    )


def verify_draw(proof: dict, ranges: Sequence[TicketRange]) -> VerificationReport:
    """
    Independent check of a published proof against the published snapshot.
    ``proof`` keys: server_seed, server_seed_hash, snapshot_digest, draw_number,
    excluded_entry_ids, combined_entropy_input, derived_hash, derived_random_value,
    winner_entry_id.
    """
    errors: list[str] = []
    seed = str(proof.get("server_seed") or "")
    seed_hash_ok = bool(seed) and hash_seed(seed) == proof.get("server_seed_hash")
    if not seed_hash_ok:
        errors.append("sha256(server_seed) does not match server_seed_hash")

    digest_ok = snapshot_digest(ranges) == proof.get("snapshot_digest")
    if not digest_ok:
        errors.append("snapshot ranges do not match snapshot_digest")

    derivation_ok = False
    winner_ok = False
    recomputed_winner = None
    try:
        result = compute_draw(seed, ranges, int(proof.get("draw_number") or 1),
                              proof.get("excluded_entry_ids") or [])
        derivation_ok = (
            result.combined_entropy_input == proof.get("combined_entropy_input")
            and result.derived_hash == proof.get("derived_hash")
            and result.derived_random_value == int(proof.get("derived_random_value", -1))
        )
        if not derivation_ok:
            errors.append("derivation does not reproduce derived_random_value")
        recomputed_winner = result.winner.entry_id
        winner_ok = recomputed_winner == str(proof.get("winner_entry_id"))
        if not winner_ok:
            errors.append("recomputed winner differs from winner_entry_id")
    except ValueError as e:
        errors.append(str(e))

    return VerificationReport(
        valid=seed_hash_ok and digest_ok and derivation_ok and winner_ok,
        seed_hash_ok=seed_hash_ok,
        snapshot_digest_ok=digest_ok,
        derivation_ok=derivation_ok,
        winner_ok=winner_ok,
        recomputed_winner_entry_id=recomputed_winner,
        errors=errors,
    )
