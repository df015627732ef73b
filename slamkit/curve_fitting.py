"""Fitting y = exp(a x^2 + b x + c) to noisy samples by nonlinear least squares."""

from __future__ import annotations

import argparse
import time
from dataclasses import dataclass, field

import numpy as np

TRUE_PARAMS = (1.0, 2.0, 1.0)
INITIAL_PARAMS = (2.0, -1.0, 5.0)


@dataclass
class FitResult:
    """Estimated parameters, final sum of squared errors and per-iteration costs."""

    params: np.ndarray
    cost: float
    iterations: int
    history: list[float] = field(default_factory=list)


def curve(params, x) -> np.ndarray:
    """Evaluate exp(a x^2 + b x + c) for params (a, b, c)."""
    a, b, c = params
    x = np.asarray(x, dtype=float)
    return np.exp(a * x * x + b * x + c)


def generate_data(true_params=TRUE_PARAMS, count: int = 100, sigma: float = 1.0, seed=None):
    """Samples at x = i / 100 with Gaussian noise of standard deviation sigma**2."""
    if count <= 0:
        raise ValueError("count must be positive")
    rng = np.random.default_rng(seed)
    x = np.arange(count) / 100.0
    y = curve(true_params, x) + rng.normal(0.0, sigma * sigma, size=count)
    return x, y


def _check(x_data, y_data, sigma):
    x = np.asarray(x_data, dtype=float)
    y = np.asarray(y_data, dtype=float)
    if x.shape != y.shape or x.ndim != 1:
        raise ValueError("x_data and y_data must be 1-D and of equal length")
    if x.size == 0:
        raise ValueError("no data to fit")
    if sigma <= 0:
        raise ValueError("sigma must be positive")
    return x, y


def _linearize(x, y, params, inv_sigma2):
    with np.errstate(over="ignore", invalid="ignore"):
        f = curve(params, x)
        error = y - f
        jac = -np.column_stack([x * x * f, x * f, f])
        hessian = inv_sigma2 * jac.T @ jac
        bias = -inv_sigma2 * jac.T @ error
        cost = float(error @ error)
    return hessian, bias, cost


def _cost(x, y, params) -> float:
    with np.errstate(over="ignore", invalid="ignore"):
        error = y - curve(params, x)
        return float(error @ error)


def gauss_newton(x_data, y_data, initial=INITIAL_PARAMS, iterations: int = 100, sigma: float = 1.0) -> FitResult:
    """Gauss-Newton iteration; stops when the cost stops decreasing."""
    x, y = _check(x_data, y_data, sigma)
    inv_sigma2 = 1.0 / (sigma * sigma)
    params = np.array(initial, dtype=float)
    history: list[float] = []
    last_cost = 0.0

    for it in range(iterations):
        hessian, bias, cost = _linearize(x, y, params, inv_sigma2)
        try:
            dx = np.linalg.solve(hessian, bias)
        except np.linalg.LinAlgError:
            break
        if not np.all(np.isfinite(dx)):
            break
        if it > 0 and cost >= last_cost:
            break
        params = params + dx
        last_cost = cost
        history.append(cost)

    return FitResult(params, _cost(x, y, params), len(history), history)


def levenberg_marquardt(
    x_data, y_data, initial=INITIAL_PARAMS, iterations: int = 10, sigma: float = 1.0
) -> FitResult:
    """Levenberg-Marquardt with an adaptive damping factor."""
    x, y = _check(x_data, y_data, sigma)
    inv_sigma2 = 1.0 / (sigma * sigma)
    params = np.array(initial, dtype=float)
    hessian, bias, cost = _linearize(x, y, params, inv_sigma2)
    lam = 1e-5 * float(np.max(np.diag(hessian)))
    nu = 2.0
    history: list[float] = []

    for _ in range(iterations):
        if not np.all(np.isfinite(bias)) or np.max(np.abs(bias)) < 1e-12:
            break
        accepted = False
        for _attempt in range(10):
            try:
                dx = np.linalg.solve(hessian + lam * np.eye(3), bias)
            except np.linalg.LinAlgError:
                lam *= nu
                nu *= 2
                continue
            candidate = params + dx
            new_cost = _cost(x, y, candidate)
            predicted = float(dx @ (lam * dx + bias))
            actual = (cost - new_cost) * inv_sigma2
            rho = actual / predicted if predicted > 0 and np.isfinite(new_cost) else -1.0
            if rho > 0:
                params = candidate
                lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                nu = 2.0
                accepted = True
                break
            lam *= nu
            nu *= 2
        if not accepted:
            break
        hessian, bias, cost = _linearize(x, y, params, inv_sigma2)
        history.append(cost)
        if np.linalg.norm(dx) <= 1e-12 * (np.linalg.norm(params) + 1e-12):
            break

    return FitResult(params, _cost(x, y, params), len(history), history)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Fit y = exp(a x^2 + b x + c) to noisy data.")
    parser.add_argument("--method", choices=["gauss-newton", "levenberg-marquardt"], default="gauss-newton")
    parser.add_argument("--iterations", type=int, default=None)
    parser.add_argument("--sigma", type=float, default=1.0)
    parser.add_argument("--count", type=int, default=100)
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args(argv)

    x, y = generate_data(TRUE_PARAMS, args.count, args.sigma, args.seed)
    start = time.perf_counter()
    if args.method == "gauss-newton":
        result = gauss_newton(x, y, INITIAL_PARAMS, args.iterations or 100, args.sigma)
    else:
        result = levenberg_marquardt(x, y, INITIAL_PARAMS, args.iterations or 10, args.sigma)
    elapsed = time.perf_counter() - start

    for cost in result.history:
        print(f"total cost: {cost}")
    print(f"solve time cost = {elapsed} seconds. ")
    a, b, c = result.params
    print(f"estimated abc = {a}, {b}, {c}")
    return 0