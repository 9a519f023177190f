"""
Levenberg-Marquardt solver for stacked, pre-whitened residuals.

The registration problems of the pipeline minimise

    f(x) = ½ Σ_i w_i (R(x) X_i + T(x) - P_i)ᵀ A_i (R(x) X_i + T(x) - P_i)

over a 6-DOF pose x. Writing A_i = L_iᵀ L_i, every term becomes the
squared norm of a whitened 3-vector e_i = sqrt(w_i) L_i (R X_i + T - P_i),
so the cost is the ordinary ½‖e(x)‖² handled here.

Mathematical Formulation:
    Gauss-Newton normal equations:
        (JᵀJ) Δx = -Jᵀe
    Levenberg-Marquardt damped equations:
        (JᵀJ + μI) Δx = -Jᵀe
    where J = ∂e/∂x and μ adapts with the gain ratio of each trial step.

The residual vector can hold thousands of rows, so the weights are
folded into the residuals by the caller and no (m × m) weight matrix is
ever formed.
"""

from dataclasses import dataclass
from typing import Callable

import numpy as np

ROBUST_LOSSES = ("l2", "huber", "cauchy", "gm", "tukey")


@dataclass
class NonlinearLSResult:
    """Result container for a Levenberg-Marquardt run.

    Attributes:
        x: Estimated parameter vector.
        iterations: Number of LM iterations (linearise + trial step).
        residuals: Final whitened residual vector e(x̂).
        cost: Final cost ½‖e(x̂)‖².
        converged: Whether the step norm fell below tolerance.
        degenerate: Whether the normal equations were near-singular.
            When True, ``x`` is the initial estimate.
        condition_number: Condition number of JᵀJ at the first
            linearisation (inf when singular).
    """

    x: np.ndarray
    iterations: int
    residuals: np.ndarray
    cost: float
    converged: bool
    degenerate: bool = False
    condition_number: float = float("nan")


def levenberg_marquardt(
    residual_fn: Callable[[np.ndarray], np.ndarray],
    jacobian_fn: Callable[[np.ndarray], np.ndarray],
    x0: np.ndarray,
    max_iter: int = 15,
    tol: float = 1e-8,
    mu0: float = 1e-3,
    max_condition_number: float = 1e8,
) -> NonlinearLSResult:
    """
    Levenberg-Marquardt minimisation of ½‖e(x)‖².

    Every iteration linearises e at the current estimate (only after an
    accepted step), solves the damped normal equations and accepts the
    trial step when the gain ratio is positive. The damping follows the
    Nielsen update: μ ← μ·max(1/3, 1-(2ρ-1)³) on success, μ ← μ·ν and
    ν ← 2ν on failure.

    Args:
        residual_fn: Function returning the whitened residuals e(x), shape (m,).
        jacobian_fn: Function returning J = ∂e/∂x, shape (m, n).
        x0: Initial estimate (n,).
        max_iter: Maximum number of LM iterations.
        tol: Convergence tolerance on ‖Δx‖.
        mu0: Initial damping parameter.
        max_condition_number: JᵀJ with a larger condition number at the
            first linearisation is reported as degenerate.

    Returns:
        NonlinearLSResult with the estimate and diagnostics.

    Raises:
        ValueError: If x0 is not 1D or the Jacobian has the wrong shape.

    Example:
        >>> # Fit y = a·exp(b·t) to three samples
        >>> t = np.array([0.0, 1.0, 2.0])
        >>> y = 2.0 * np.exp(0.5 * t)
        >>> e = lambda x: x[0] * np.exp(x[1] * t) - y
        >>> J = lambda x: np.column_stack(
        ...     [np.exp(x[1] * t), x[0] * t * np.exp(x[1] * t)])
        >>> result = levenberg_marquardt(e, J, np.array([1.0, 0.0]), max_iter=50)
        >>> np.allclose(result.x, [2.0, 0.5], atol=1e-6)
        True
    """
    x0 = np.asarray(x0, dtype=np.float64)
    if x0.ndim != 1:
        raise ValueError(f"x0 must be 1D array, got shape {x0.shape}")

    n = len(x0)
    x = x0.copy()

    e = np.asarray(residual_fn(x), dtype=np.float64)
    cost = 0.5 * float(e @ e)

    J = np.asarray(jacobian_fn(x), dtype=np.float64)
    if J.shape != (len(e), n):
        raise ValueError(f"Jacobian shape {J.shape}, expected ({len(e)}, {n})")

    JtJ = J.T @ J
    Jte = J.T @ e

    condition_number = _condition_number(JtJ)
    if not np.isfinite(condition_number) or condition_number > max_condition_number:
        return NonlinearLSResult(
            x=x0.copy(),
            iterations=0,
            residuals=e,
            cost=cost,
            converged=False,
            degenerate=True,
            condition_number=condition_number,
        )

    mu = mu0
    nu = 2.0
    converged = False
    iteration = 0

    for iteration in range(1, max_iter + 1):
        try:
            delta_x = np.linalg.solve(JtJ + mu * np.eye(n), -Jte)
        except np.linalg.LinAlgError:
            return NonlinearLSResult(
                x=x0.copy(),
                iterations=iteration,
                residuals=e,
                cost=cost,
                converged=False,
                degenerate=True,
                condition_number=condition_number,
            )

        x_new = x + delta_x
        e_new = np.asarray(residual_fn(x_new), dtype=np.float64)
        cost_new = 0.5 * float(e_new @ e_new)

        # Predicted decrease of the local quadratic model: ½ Δx'(μΔx - J'e)
        predicted_decrease = 0.5 * float(delta_x @ (mu * delta_x - Jte))
        actual_decrease = cost - cost_new
        if predicted_decrease > 1e-15:
            gain_ratio = actual_decrease / predicted_decrease
        else:
            gain_ratio = 0.0

        if gain_ratio > 0:
            x = x_new
            e = e_new
            cost = cost_new
            mu = mu * max(1.0 / 3.0, 1.0 - (2.0 * gain_ratio - 1.0) ** 3)
            nu = 2.0

            if np.linalg.norm(delta_x) < tol:
                converged = True
                break

            J = np.asarray(jacobian_fn(x), dtype=np.float64)
            JtJ = J.T @ J
            Jte = J.T @ e
        else:
            mu = mu * nu
            nu = 2.0 * nu
            if np.linalg.norm(delta_x) < tol or mu > 1e10:
                converged = np.linalg.norm(delta_x) < tol
                break

    return NonlinearLSResult(
        x=x,
        iterations=iteration,
        residuals=e,
        cost=cost,
        converged=converged,
        degenerate=False,
        condition_number=condition_number,
    )


def compute_robust_weights(
    u: np.ndarray,
    loss: str = "huber",
) -> np.ndarray:
    """
    IRLS weights for robust loss functions.

    Args:
        u: Normalised residuals r / scale.
        loss: One of "l2", "huber", "cauchy", "gm" or "tukey".

    Returns:
        Weight for each residual, in (0, 1].

    Raises:
        ValueError: If the loss name is unknown.
    """
    u = np.asarray(u, dtype=np.float64)
    abs_u = np.abs(u)

    if loss == "l2":
        weights = np.ones_like(abs_u)
    elif loss == "huber":
        # Huber: w = min(1, 1/|u|)
        weights = np.where(abs_u <= 1.0, 1.0, 1.0 / np.maximum(abs_u, 1e-12))
    elif loss == "cauchy":
        weights = 1.0 / (1.0 + u ** 2)
    elif loss == "gm" or loss == "geman_mcclure":
        weights = 1.0 / (1.0 + u ** 2) ** 2
    elif loss == "tukey":
        weights = np.where(abs_u <= 1.0, (1.0 - u ** 2) ** 2, 0.0)
        weights = np.maximum(weights, 1e-10)
    else:
        raise ValueError(f"Unknown loss function: {loss}")

    return weights


def _condition_number(JtJ: np.ndarray) -> float:
    """Condition number of a symmetric PSD matrix (inf when singular)."""
    eigvals = np.linalg.eigvalsh(JtJ)
    largest = float(eigvals[-1])
    smallest = float(eigvals[0])
    if largest <= 0.0 or smallest <= largest * 1e-15:
        return float("inf")
    return largest / smallest
