import numpy as np
from scipy import sparse
from scipy.sparse.linalg import lsqr
from scipy.integrate import cumulative_trapezoid
from typing import Sequence


def integrate(
    mean_force: np.ndarray,
    dx: float,
    RT: float = None,
    method: str = "trapezoid",
) -> tuple:
    """numeric integration of thermodynamic force by trapezoid or rectangle rule

    The mean force is the gradient of the free energy, A(x) = int dA/dx dx.

    Args:
        mean_force: gradient of the free energy at the bin centers
        dx: bin width
        RT: thermal energy, if given the probability density is returned as well
        method: use 'trapezoid' or 'rectangle' rule

    Returns:
        pmf (np.ndarray): potential of mean force
        rho (np.ndarray): probability density, only if RT is given
    """
    data = np.array(mean_force, dtype=float)

    if method == "trapezoid":
        pmf = cumulative_trapezoid(data, dx=dx, initial=0.0)
    elif method == "rectangle":
        pmf = np.cumsum(data) * dx
    else:
        raise ValueError(f" >>> Fatal Error: Unknown integration method `{method}`!")

    if RT is None:
        return pmf

    rho = np.exp(-(pmf - pmf.min()) / RT)
    rho /= rho.sum() * dx
    pmf = -RT * np.log(rho, out=np.full_like(rho, np.nan), where=(rho != 0))
    return pmf, rho


def _difference_operator(n: int, h: float, periodic: bool) -> sparse.csr_matrix:
    """forward differences (A[i+1] - A[i]) / h between neighbouring bins"""
    rows = n if periodic else n - 1
    main = sparse.eye(rows, n, k=0, format="csr")
    upper = sparse.eye(rows, n, k=1, format="lil")
    if periodic:
        upper[n - 1, 0] = 1.0
    return ((upper.tocsr() - main) / h).tocsr()


def _midpoint_operator(n: int, periodic: bool) -> sparse.csr_matrix:
    """average of neighbouring bins (f[i+1] + f[i]) / 2"""
    rows = n if periodic else n - 1
    main = sparse.eye(rows, n, k=0, format="csr")
    upper = sparse.eye(rows, n, k=1, format="lil")
    if periodic:
        upper[n - 1, 0] = 1.0
    return (0.5 * (upper.tocsr() + main)).tocsr()


def integrate_2d(
    fx: np.ndarray,
    fy: np.ndarray,
    dx: float,
    dy: float,
    periodic: Sequence[bool] = (False, False),
    atol: float = 1.0e-10,
) -> np.ndarray:
    """least squares integration of a 2D mean force field

    The free energy A on the bin centers minimizes the squared deviation of
    its finite differences from the mean force interpolated to the midpoints
    between bins. The mean force need not be curl free.

    Args:
        fx: dA/dx, shape (nx, ny)
        fy: dA/dy, shape (nx, ny)
        dx: bin width along x
        dy: bin width along y
        periodic: periodicity of x and y
        atol: tolerance of the sparse least squares solver

    Returns:
        pmf: free energy of shape (nx, ny), minimum shifted to zero
    """
    fx = np.asarray(fx, dtype=float)
    fy = np.asarray(fy, dtype=float)
    if fx.shape != fy.shape or fx.ndim != 2:
        raise ValueError(" >>> Fatal Error: 2D integration needs two force arrays of equal shape (nx, ny)!")
    nx, ny = fx.shape

    # A is flattened in C order, index i*ny + j
    Dx = sparse.kron(_difference_operator(nx, dx, periodic[0]), sparse.eye(ny))
    Dy = sparse.kron(sparse.eye(nx), _difference_operator(ny, dy, periodic[1]))
    Mx = sparse.kron(_midpoint_operator(nx, periodic[0]), sparse.eye(ny))
    My = sparse.kron(sparse.eye(nx), _midpoint_operator(ny, periodic[1]))

    system = sparse.vstack([Dx, Dy]).tocsr()
    rhs = np.concatenate([Mx @ fx.ravel(), My @ fy.ravel()])

    solution = lsqr(system, rhs, atol=atol, btol=atol)[0]
    pmf = solution.reshape(nx, ny)
    return pmf - pmf.min()
