"""Retention policy for periodic backups.

Backups newer than the cutoff are always kept. Older ones are thinned so that
consecutive kept backups are more than retain_interval apart.

The first retention point is the oldest backup in the whole list, even when
that backup is itself inside the protected window. Because the comparison is
strictly greater-than, the oldest backup never survives its own comparison
(the gap to itself is zero) unless it is newer than the cutoff.
"""


def prune_candidates(refs, now, cutoff_age, retain_interval):
    """Return the backups to delete, oldest first. Has no side effects."""
    ordered = sorted(refs, key=lambda r: r.created_at)
    if not ordered:
        return []

    cutoff = now - cutoff_age
    last_kept = ordered[0]
    candidates = []
    for ref in ordered:
        if ref.created_at > cutoff:
            last_kept = ref
        elif ref.created_at - last_kept.created_at > retain_interval:
            last_kept = ref
        else:
            candidates.append(ref)
    return candidates
