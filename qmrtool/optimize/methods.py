"""
Optimization methods that can be passed as method to scipy.optimize.minimize.
"""
from typing import Tuple, Optional, Union, Sequence

import numpy as np
from numpy.random import default_rng, Generator
from scipy.optimize import OptimizeResult, Bounds, LinearConstraint, NonlinearConstraint

from ..constants import SOMA_POPULATION_SIZE, SOMA_MIGRATIONS, SOMA_PRT, SOMA_PATH_LENGTH, SOMA_STEP
from ..utils.math import is_smaller_than_with_tolerance, is_higher_than_with_tolerance

BoundsType = Union[Bounds, Sequence[Tuple[Optional[float], Optional[float]]]]

PUTBACK_STRATEGIES = ('random', 'clip')


class Optimizer:
    """
    Base class of the custom methods for scipy.optimize.minimize. Instances are called as
    method(fun, x0, args=args, bounds=..., constraints=..., callback=..., **options) and return an OptimizeResult.
    """

    def __call__(self, fun: callable, x0: np.ndarray, args=(), **options) -> OptimizeResult:
        raise NotImplementedError()


class SOMA(Optimizer):
    """
    Self-organizing migrating algorithm, All-to-One variant. In a migration every individual except the leader (lowest
    cost) jumps along a perturbed path towards the leader and keeps the best position it visited, if that improves on
    its own. See https://ivanzelinka.eu/somaalgorithm/About.html.

    The result carries the leader cost per migration in ``history``, the leader positions in ``leader_history`` and the
    cost of x0 in ``reference_fun``.

    :param population_sz: Number of individuals.
    :param max_migrations: Upper limit on the number of migrations.
    :param max_fevals: Upper limit on the number of objective evaluations, 10⁴ per dimension when omitted.
    :param PRT: Probability that a coordinate moves in a jump.
    :param path_length: End of the path, as a multiple of the distance to the leader.
    :param step: Distance between path positions, in the same unit.
    :param putback: 'random' redraws coordinates that leave the bounds, 'clip' moves them onto the bound.
    :param seed: Seed or Generator.
    :raise ValueError: Invalid control parameters.
    """

    def __init__(self,
                 population_sz: int = SOMA_POPULATION_SIZE,
                 max_migrations: int = SOMA_MIGRATIONS,
                 max_fevals: Optional[int] = None,
                 PRT: float = SOMA_PRT,
                 path_length: float = SOMA_PATH_LENGTH,
                 step: float = SOMA_STEP,
                 putback: str = 'random',
                 seed: Union[None, int, Generator] = None
                 ):
        problems = []
        if not 0 < step <= path_length:
            problems.append(f"step {step} should be in (0, path_length={path_length}]")
        if not 0 < PRT <= 1:
            problems.append(f"PRT {PRT} should be in (0, 1]")
        if population_sz < 1:
            problems.append("the population needs at least one individual")
        if max_migrations < 1:
            problems.append("at least one migration is needed")
        if putback not in PUTBACK_STRATEGIES:
            problems.append(f"putback should be one of {PUTBACK_STRATEGIES}, got {putback}")
        if problems:
            raise ValueError("SOMA: " + "; ".join(problems))

        self.population_sz = population_sz
        self.max_migrations = max_migrations
        self.max_fevals = max_fevals
        self.PRT = PRT
        self.path_length = path_length
        self.step = step
        self.N_jump = int(np.ceil(path_length / step))
        self.putback = putback
        self.seed = seed

    def __str__(self):
        settings = ", ".join(f"{key}={value}" for key, value in vars(self).items())
        return f"SOMA All-to-One ({settings})"

    def __call__(self, fun: callable, x0: np.ndarray, args=(), bounds: Optional[BoundsType] = None,
                 constraints=(), callback: Optional[callable] = None, **_options) -> OptimizeResult:
        """
        :param fun: Objective, called as fun(x, *args).
        :param x0: Replaces the first individual of the random initial population.
        :param bounds: Finite bounds, scipy Bounds or (min, max) pairs.
        :param constraints: Linear- or NonlinearConstraint(s). Positions that violate one cost inf.
        :param callback: Receives the leader after every migration. Returning True or raising StopIteration ends the
                         run.
        """
        x0 = np.atleast_1d(np.asarray(x0, dtype=np.float64))
        bounds = standardize_bounds(bounds, x0.size)
        budget = x0.size * 10 ** 4 if self.max_fevals is None else self.max_fevals

        population = Population(self.population_sz, bounds, constraints, lambda x: fun(x, *args), budget, x0=x0,
                                rng=default_rng(self.seed), putback=self.putback)

        history, leader_history = [], []
        cancelled = False
        migration = 0
        while migration < self.max_migrations and population.fevals < budget:
            migration += 1
            population.migrate(self.path_length, self.N_jump, self.PRT)
            history.append(population.best_cost)
            leader_history.append(population.best_individual.copy())
            if callback is not None and _cancel_requested(callback, population, migration):
                cancelled = True
                break

        reason = "cancelled by callback" if cancelled else "stopped"
        return OptimizeResult(x=population.best_individual, fun=population.best_cost, nfev=population.fevals,
                              nit=migration, success=bool(np.isfinite(population.best_cost)) and not cancelled,
                              message=f"{reason} at migration: {migration}", history=np.array(history),
                              leader_history=np.array(leader_history), reference_fun=population.reference_cost)


def _cancel_requested(callback: callable, population: 'Population', migration: int) -> bool:
    # minimize wraps user callbacks, the wrapped ones take an intermediate OptimizeResult
    x = population.best_individual.copy()
    try:
        if hasattr(callback, 'stop_iteration'):
            answer = callback(OptimizeResult(x=x, fun=population.best_cost, nit=migration, nfev=population.fevals))
        else:
            answer = callback(x)
    except StopIteration:
        return True
    return isinstance(answer, (bool, np.bool_)) and bool(answer)


class Population:
    """
    The individuals of a SOMA run with their costs and the function evaluation count.

    :param sz: Number of individuals.
    :param bounds: Array of shape (Nx, 2) with finite (lower, upper) per coordinate.
    :param constraints: Constraint(s) passed to is_constrained.
    :param fun: Objective of a single position.
    :param max_fevals: Evaluation budget, a migration stops early when it is spent.
    :param x0: Position of individual 0, its cost is kept as reference_cost.
    :param rng: Generator for the initial positions, perturbations and putback.
    :param putback: 'random' or 'clip'.
    """

    def __init__(self, sz: int, bounds: np.ndarray, constraints, fun: callable, max_fevals: int,
                 x0: Optional[np.ndarray] = None, rng: Optional[Generator] = None, putback: str = 'random'):
        self.sz = sz
        self.constraints = constraints
        self.lower_bound, self.upper_bound = bounds[:, 0], bounds[:, 1]
        self.Nx = bounds.shape[0]
        self.fun = fun
        self.max_fevals = max_fevals
        self.rng = rng if rng is not None else default_rng()
        self.putback = putback
        self.fevals = 0
        self.reference_cost = None

        self._values = self._uniform((sz, self.Nx))
        if x0 is not None:
            self._values[0] = self._putback(np.array(x0, dtype=np.float64).reshape(1, -1))[0]

        self._fitness = self._evaluate(self._values)
        if x0 is not None:
            self.reference_cost = self._fitness[0]

        leader = int(np.argmin(self._fitness))
        self.best_cost = self._fitness[leader]
        self.best_individual = self._values[leader].copy()

    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def fitness(self) -> np.ndarray:
        return self._fitness

    def cost_fun(self, x: np.ndarray) -> float:
        return np.inf if is_constrained(x, self.constraints) else self.fun(x)

    def _uniform(self, shape, mask: Optional[np.ndarray] = None) -> np.ndarray:
        lower = self.lower_bound if mask is None else self.lower_bound[mask]
        upper = self.upper_bound if mask is None else self.upper_bound[mask]
        return lower + self.rng.random(shape) * (upper - lower)

    def _evaluate(self, positions: np.ndarray) -> np.ndarray:
        self.fevals += len(positions)
        return np.array([self.cost_fun(position) for position in positions], dtype=np.float64)

    def migrate(self, path_length: float, N_jump: int, PRT: float):
        """
        Moves every individual except the leader towards the leader of the previous migration.

        :param path_length: End of the path relative to the distance to the leader.
        :param N_jump: Number of positions on the path, the start included.
        :param PRT: Perturbation probability.
        """
        leader_id = int(np.argmin(self._fitness))
        leader = self._values[leader_id].copy()
        jumps = np.linspace(0, path_length, num=N_jump)[:, np.newaxis]

        for j in range(self.sz):
            budget = self.max_fevals - self.fevals
            if budget <= 0:
                break
            if j == leader_id:
                continue

            start = self._values[j]
            path = start + jumps * (leader - start) * self._perturbation_matrix(N_jump, PRT)
            path = self._putback(path)[:budget]
            costs = self._evaluate(path)

            best = int(np.argmin(costs))
            if costs[best] < self._fitness[j]:
                self._values[j] = path[best]
                self._fitness[j] = costs[best]
            if costs[best] < self.best_cost:
                self.best_cost = costs[best]
                self.best_individual = path[best].copy()

    def _perturbation_matrix(self, n_rows: int, PRT: float) -> np.ndarray:
        """
        One PRT vector per jump. Rows without any moving coordinate are redrawn.
        """
        moving = self.rng.random((n_rows, self.Nx)) < PRT
        empty = ~moving.any(axis=1)
        while np.any(empty):
            moving[empty] = self.rng.random((int(empty.sum()), self.Nx)) < PRT
            empty = ~moving.any(axis=1)
        return moving

    def _putback(self, journey: np.ndarray) -> np.ndarray:
        """
        Returns the positions moved back inside the bounds.
        """
        if self.putback == 'clip':
            return np.clip(journey, self.lower_bound, self.upper_bound)

        outside = (journey < self.lower_bound) | (journey > self.upper_bound)
        for row in np.flatnonzero(outside.any(axis=1)):
            journey[row, outside[row]] = self._uniform(int(outside[row].sum()), outside[row])
        return journey


def is_constrained(x: np.ndarray, constraints) -> bool:
    """
    True when x violates lb <= c(x) <= ub for any of the constraints.

    :param constraints: None, one Linear- or NonlinearConstraint, or a sequence of them.
    :raise ValueError: A constraint of another type, such as a scipy constraint dictionary.
    """
    if constraints is None:
        return False
    if isinstance(constraints, (LinearConstraint, NonlinearConstraint)):
        constraints = [constraints]

    for constraint in constraints:
        if isinstance(constraint, LinearConstraint):
            value = np.asarray(constraint.A) @ x
        elif isinstance(constraint, NonlinearConstraint):
            value = constraint.fun(x)
        else:
            raise ValueError(f"SOMA supports Linear- and NonlinearConstraint, got {type(constraint).__name__}")

        if np.any(is_smaller_than_with_tolerance(value, constraint.lb)) or \
                np.any(is_higher_than_with_tolerance(value, constraint.ub)):
            return True
    return False


def check_bounded(allbounds: Optional[BoundsType]) -> None:
    """
    Population based methods sample the search domain, so every coordinate needs two finite bounds.

    :raise ValueError: Bounds are missing or infinite.
    """
    if allbounds is None:
        raise ValueError("Bounds are required, the search domain has to be finite.")

    if isinstance(allbounds, Bounds):
        flat = np.concatenate([np.atleast_1d(allbounds.lb), np.atleast_1d(allbounds.ub)])
    else:
        flat = [bound for pair in allbounds for bound in pair]

    if any(bound is None or not np.isfinite(bound) for bound in flat):
        raise ValueError("Every bound has to be finite.")


def standardize_bounds(bounds: Optional[BoundsType], nx: int) -> np.ndarray:
    """
    :param bounds: scipy Bounds or (min, max) pairs
    :param nx: Number of coordinates
    :return: Array of shape (nx, 2)
    :raise ValueError: Missing, infinite, reversed or a wrong number of bounds.
    """
    check_bounded(bounds)
    if isinstance(bounds, Bounds):
        array = np.column_stack([np.broadcast_to(np.asarray(bounds.lb, dtype=np.float64), (nx,)),
                                 np.broadcast_to(np.asarray(bounds.ub, dtype=np.float64), (nx,))])
    else:
        array = np.array(bounds, dtype=np.float64).reshape(-1, 2)

    if array.shape[0] != nx:
        raise ValueError(f"Got {array.shape[0]} bounds for {nx} coordinates.")
    if np.any(array[:, 1] < array[:, 0]):
        raise ValueError("A lower bound exceeds its upper bound.")
    return array
