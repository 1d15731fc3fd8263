import numpy as np
from typing import Union, Sequence


def diff(
    a: Union[np.ndarray, float],
    b: Union[np.ndarray, float],
    periodicity: list,
) -> Union[np.ndarray, float]:
    """get (periodic) difference of elements of numbers or arrays

    Args:
        a: number or array
        b: number or array
        periodicity: periodic boundary conditions [lower, upper]

    Returns:
        diff: element-wise difference (a-b)
    """
    diff_ab = a - b
    diff_ab = minimum_image(diff_ab, periodicity)
    return diff_ab


def minimum_image(
    d: Union[np.ndarray, float],
    periodicity: list,
) -> Union[np.ndarray, float]:
    """Shift a difference into [-period/2, period/2]

    Args:
        d: float or array of differences
        periodicity: periodic boundary conditions ([lower, upper]),
                     if None, returns d

    Returns:
        d: minimum image of d
    """
    if not periodicity:
        return d

    if len(periodicity) != 2:
        raise ValueError(" >>> Fatal Error: Invalid periodicity")

    period = periodicity[1] - periodicity[0]
    return d - period * np.round(np.asarray(d) / period)


def correct_periodicity(
    x: Union[np.ndarray, float],
    periodicity: list,
) -> Union[np.ndarray, float]:
    """Wrap x to periodic range [lower, upper)

    Args:
        x: float or array to correct
        periodicity: periodic boundary conditions ([lower, upper]),
                     if None, returns x

    Returns:
        x: x in periodic range defined by periodicity
    """
    if not periodicity:
        return x

    if len(periodicity) != 2:
        raise ValueError(" >>> Fatal Error: Invalid periodicity")

    period = periodicity[1] - periodicity[0]
    return periodicity[0] + np.mod(np.asarray(x) - periodicity[0], period)


def gram_schmidt(
    vector: np.ndarray,
    directions: Sequence[np.ndarray],
    tol: float = 1.0e-10,
) -> np.ndarray:
    """Remove all components of `vector` that lie in the span of `directions`

    The directions are orthonormalized in the given order with the modified
    Gram-Schmidt process before their projections are subtracted. Directions
    whose remaining norm is below `tol` (relative to their original norm, or
    absolute for zero vectors) are linearly dependent on earlier ones or
    degenerate and are skipped.

    Args:
        vector: vector to orthogonalize
        directions: prior directions, same length as vector
        tol: threshold below which a direction counts as degenerate

    Returns:
        orthogonalized copy of vector
    """
    v = np.array(vector, dtype=float)
    basis = []
    for d in directions:
        u = np.array(d, dtype=float)
        if u.shape != v.shape:
            raise ValueError(
                f" >>> Fatal Error: Direction of shape {u.shape} does not match vector of shape {v.shape}"
            )
        norm0 = np.linalg.norm(u)
        if norm0 < tol:
            continue
        for e in basis:
            u -= np.dot(e, u) * e
        norm = np.linalg.norm(u)
        if norm < tol * max(norm0, 1.0):
            continue
        basis.append(u / norm)

    for e in basis:
        v -= np.dot(e, v) * e
    return v

