"""
Edit-distance helpers for fuzzy entity matching and merge-candidate detection.
"""


def levenshtein_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def max_edits(term: str) -> int:
    """Edit budget for a term, matching the OpenSearch 'AUTO' fuzziness rule."""
    if len(term) <= 2:
        return 0
    if len(term) <= 5:
        return 1
    return 2


def name_similarity(a: str, b: str) -> float:
    """Similarity of two names in [0, 1]: 1.0 equal, 0.9 when one contains the other, else edit-distance ratio."""
    a_lower = a.lower()
    b_lower = b.lower()

    if a_lower == b_lower:
        return 1.0
    if a_lower in b_lower or b_lower in a_lower:
        return 0.9

    max_len = max(len(a_lower), len(b_lower))
    return 1 - levenshtein_distance(a_lower, b_lower) / max_len
