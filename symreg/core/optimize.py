"""Weighted gradient descent with an adaptive step length."""

import logging

import numpy as np

logger = logging.getLogger(__name__)


class GradientDescent:

    def __init__(self, fun, x0, increment, weights=None, step=1.0,
                 max_iter=100, min_step=1e-3, grow=1.2, shrink=0.5,
                 failures=(ArithmeticError,)):
        r""" Minimize a cost by normalised, weighted gradient descent

        At each iteration a trial point is obtained by moving a distance
        `step` along the weighted negative gradient. The move is normalised
        in the space where parameter i is scaled by 1/sqrt(weights[i]), so
        that `step` has the units of a displacement (e.g. mm when the
        weights of rotation-like parameters are 1/r^2). A trial that lowers
        the cost is accepted and the step grows; otherwise the step shrinks.

        Parameters
        ----------
        fun : callable
            ``fun(x)`` returns ``(cost, gradient)``; ``x`` is whatever
            `increment` accepts (an array or a transform object)
        x0 : object
            Initial point.
        increment : callable
            ``increment(x, delta)`` returns the point moved by the parameter
            vector ``delta``.
        weights : array, optional
            Per-parameter weights. Default ones.
        step : float, optional
            Initial step length.
        max_iter : int, optional
            Maximum number of iterations (cost evaluations after the first).
        min_step : float, optional
            Descent stops when the step falls below this value.
        grow, shrink : float, optional
            Step multipliers after a successful / failed trial.
        failures : tuple of exception types, optional
            Exceptions raised by `increment` or `fun` that mark a trial as
            failed instead of aborting the descent.

        Notes
        -----
        The best point found is always kept, so stopping at `max_iter`
        returns the best iterate rather than raising.
        """
        self.fun = fun
        self.increment = increment
        self.step = float(step)
        self.max_iter = int(max_iter)
        self.min_step = float(min_step)
        self.grow = grow
        self.shrink = shrink
        self.failures = failures

        cost, grad = fun(x0)
        grad = np.asarray(grad, dtype=np.float64)
        if weights is None:
            weights = np.ones_like(grad)
        self.weights = np.asarray(weights, dtype=np.float64)
        self._x = x0
        self._f = cost
        self._grad = grad
        self._nit = 0
        self._nfev = 1
        self._message = None
        self._run()

    def _direction(self, grad):
        norm = np.sqrt(np.sum(self.weights * grad ** 2))
        if not np.isfinite(norm) or norm == 0:
            return None
        return -self.weights * grad / norm

    def _run(self):
        step = self.step
        while True:
            if self._nit >= self.max_iter:
                self._message = 'Maximum number of iterations reached'
                break
            if step < self.min_step:
                self._message = 'Step length below tolerance'
                break
            direction = self._direction(self._grad)
            if direction is None:
                self._message = 'Zero gradient'
                break
            self._nit += 1
            try:
                x_new = self.increment(self._x, step * direction)
                f_new, g_new = self.fun(x_new)
                self._nfev += 1
            except self.failures as e:
                logger.debug("Gradient descent trial failed: %s", e)
                step *= self.shrink
                continue
            if np.isfinite(f_new) and f_new < self._f:
                self._x = x_new
                self._f = f_new
                self._grad = np.asarray(g_new, dtype=np.float64)
                step *= self.grow
            else:
                step *= self.shrink
        self.final_step = step

    @property
    def xopt(self):

        return self._x

    @property
    def fopt(self):

        return self._f

    @property
    def nit(self):

        return self._nit

    @property
    def nfev(self):

        return self._nfev

    @property
    def message(self):

        return self._message
