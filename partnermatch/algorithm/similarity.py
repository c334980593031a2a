"""Edit distance between tag sequences and between strings.

Lower distance means higher similarity. Both functions run the classic
O(n*m) dynamic programme over a (n+1) x (m+1) table.
"""

from typing import Hashable, Sequence


def _edit_distance(a: Sequence[Hashable], b: Sequence[Hashable]) -> int:
    n = len(a)
    m = len(b)
    if n * m == 0:
        return n + m

    d = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(n + 1):
        d[i][0] = i
    for j in range(m + 1):
        d[0][j] = j

    for i in range(1, n + 1):
        for j in range(1, m + 1):
            delete = d[i - 1][j] + 1
            insert = d[i][j - 1] + 1
            substitute = d[i - 1][j - 1] + (0 if a[i - 1] == b[j - 1] else 1)
            d[i][j] = min(delete, insert, substitute)

    return d[n][m]


def tag_distance(a: Sequence[str], b: Sequence[str]) -> int:
    """Minimum insertions, deletions or substitutions of whole tags to turn a into b.

    Order matters: ``["x", "y"]`` and ``["y", "x"]`` are distance 2 apart.
    """
    return _edit_distance(list(a), list(b))


def string_distance(a: str, b: str) -> int:
    """Levenshtein distance over characters."""
    return _edit_distance(a, b)
