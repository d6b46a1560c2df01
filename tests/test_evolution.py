"""
Tests for jade_swarm/evolution/

Tests population storage, archive, adaptation, operators and fitness
functions.
"""

import math

import pytest
import numpy as np

from jade_swarm.core.rng import NumpyDraws, RandomDraws
from jade_swarm.evolution.adaptation import (
    MU_FLOOR,
    AdaptationState,
    arithmetic_mean,
    lehmer_mean,
    power_mean,
)
from jade_swarm.evolution.archive import (
    Archive,
    OldestFirstTrim,
    UniformTrim,
    create_trim_strategy,
)
from jade_swarm.evolution.fitness import (
    FitnessFunction,
    benchmark_minimizes,
    get_benchmark,
    rastrigin,
    rosenbrock,
    shifted_sphere,
    sphere,
)
from jade_swarm.evolution.operators import (
    SamplingPool,
    crossover,
    draw_control_parameters,
    draw_crossover_rate,
    draw_mutation_factor,
    is_at_least_as_good,
    mutate,
    pbest_count,
)
from jade_swarm.evolution.population import (
    Bounds,
    Individual,
    PopulationStore,
    partition_population,
    rank_indices,
    shard_slice,
)
from jade_swarm.exceptions import ConfigurationError, EvaluationError


class ScriptedDraws(RandomDraws):
    """Replays prepared values for each draw kind."""

    def __init__(self, uniform=(), normal=(), cauchy=(), integer=()):
        self._uniform = list(uniform)
        self._normal = list(normal)
        self._cauchy = list(cauchy)
        self._integer = list(integer)

    def uniform(self, low=0.0, high=1.0, size=None):
        if size is None:
            return self._uniform.pop(0)
        values, self._uniform = self._uniform[:size], self._uniform[size:]
        return np.array(values)

    def normal(self, loc, scale):
        return self._normal.pop(0)

    def cauchy(self, loc, scale):
        return self._cauchy.pop(0)

    def integer(self, low, high):
        return self._integer.pop(0)


# ==================== Population Tests ====================

class TestPartition:
    """Tests for splitting the population over shards."""

    def test_remainder_goes_to_low_ranks(self):
        """Remainder is spread one per shard from rank 0."""
        assert partition_population(10, 3) == [4, 3, 3]
        assert partition_population(12, 4) == [3, 3, 3, 3]

    def test_sizes_sum_to_total(self):
        """Partition never loses or invents individuals."""
        for total in (4, 17, 40, 101):
            for shards in (1, 2, 3, 7):
                assert sum(partition_population(total, shards)) == total

    def test_shard_slice(self):
        """Offset is the number of individuals owned by lower ranks."""
        assert shard_slice(10, 0, 3) == (0, 4)
        assert shard_slice(10, 2, 3) == (7, 3)

    def test_no_shards(self):
        """Zero shards is a configuration error."""
        with pytest.raises(ConfigurationError):
            partition_population(10, 0)


class TestBounds:
    """Tests for Bounds."""

    def test_uniform_bounds(self):
        """Uniform bounds repeat the pair for every dimension."""
        bounds = Bounds.uniform(-1.0, 2.0, 3)

        assert bounds.dimension == 3
        assert np.array_equal(bounds.width, [3.0, 3.0, 3.0])

    def test_clip_and_contains(self):
        """Clipping projects onto the box."""
        bounds = Bounds([-1.0, 0.0], [1.0, 2.0])
        clipped = bounds.clip(np.array([-5.0, 5.0]))

        assert np.array_equal(clipped, [-1.0, 2.0])
        assert bounds.contains(clipped)
        assert not bounds.contains(np.array([0.0, 2.5]))

    def test_sample_inside(self):
        """Sampled points lie inside the box."""
        bounds = Bounds([-1.0, 10.0], [1.0, 20.0])
        points = bounds.sample(NumpyDraws(seed=0), 200)

        assert points.shape == (200, 2)
        assert all(bounds.contains(p) for p in points)

    def test_lower_above_upper(self):
        """Inverted bounds are rejected."""
        with pytest.raises(ConfigurationError):
            Bounds([0.0, 1.0], [1.0, 0.5])

    def test_non_finite(self):
        """Infinite bounds are rejected."""
        with pytest.raises(ConfigurationError):
            Bounds([0.0], [math.inf])

    def test_shape_mismatch(self):
        """Lower and upper must have equal length."""
        with pytest.raises(ConfigurationError):
            Bounds([0.0, 0.0], [1.0])


class TestPopulationStore:
    """Tests for PopulationStore."""

    def make_store(self, total=8, dimension=2, **kwargs):
        store = PopulationStore(total, dimension, **kwargs)
        store.set_all_bounds(-5.0, 5.0)
        return store

    def test_too_small_population(self):
        """Fewer than four individuals is rejected."""
        with pytest.raises(ConfigurationError):
            PopulationStore(3, 2)

    def test_zero_dimension(self):
        """Dimension must be positive."""
        with pytest.raises(ConfigurationError):
            PopulationStore(10, 0)

    def test_shard_without_individuals(self):
        """A rank owning no individuals is rejected."""
        assert PopulationStore(4, 2, rank=0, shards=5).size == 1
        with pytest.raises(ConfigurationError):
            PopulationStore(4, 2, rank=4, shards=5)

    def test_bound_vector_length(self):
        """Bound vectors must match the dimension."""
        store = PopulationStore(8, 3)
        with pytest.raises(ConfigurationError):
            store.set_all_bounds_vectors([0.0, 0.0], [1.0, 1.0])

    def test_initial_population_in_bounds(self):
        """Initial vectors are inside the box and unevaluated."""
        store = PopulationStore(20, 3)
        store.set_all_bounds_vectors([-1.0, 0.0, 5.0], [1.0, 1.0, 6.0])
        store.create_initial_population(NumpyDraws(seed=0))

        assert store.current.shape == (20, 3)
        assert all(store.bounds.contains(x) for x in store.current)
        assert np.all(np.isnan(store.current_fitness))

    def test_initial_population_needs_bounds(self):
        """Creating the population before bounds is an error."""
        store = PopulationStore(8, 2)
        with pytest.raises(ConfigurationError):
            store.create_initial_population(NumpyDraws(seed=0))

    def test_feed_replaces_first_individuals(self):
        """Feed vectors seed the population, clipped to the box."""
        store = self.make_store()
        store.set_feed([[1.0, 2.0], [9.0, -9.0]])
        store.create_initial_population(NumpyDraws(seed=0))

        assert np.array_equal(store.current[0], [1.0, 2.0])
        assert np.array_equal(store.current[1], [5.0, -5.0])

    def test_excess_feed_truncated(self):
        """Feed vectors beyond the local size are dropped."""
        store = self.make_store(total=4)
        store.set_feed([[float(k), 0.0] for k in range(6)])

        assert len(store.feed_vectors) == 4

    def test_feed_vector_length(self):
        """Feed vectors must match the dimension."""
        store = self.make_store()
        with pytest.raises(ConfigurationError):
            store.set_feed([[1.0, 2.0, 3.0]])

    def test_evaluate_only_unevaluated(self):
        """Evaluation fills NaN slots and counts calls."""
        store = self.make_store()
        store.create_initial_population(NumpyDraws(seed=0))

        assert store.evaluate_current_vectors(sphere) == 8
        assert store.evaluate_current_vectors(sphere) == 0
        assert store.current_fitness[0] == pytest.approx(sphere(store.current[0]))

    def test_evaluate_without_function(self):
        """A missing fitness function is an evaluation error."""
        store = self.make_store()
        store.create_initial_population(NumpyDraws(seed=0))
        with pytest.raises(EvaluationError):
            store.evaluate_current_vectors(None)

    def test_evaluate_non_finite(self):
        """Non-finite fitness is an evaluation error."""
        store = self.make_store()
        store.create_initial_population(NumpyDraws(seed=0))
        with pytest.raises(EvaluationError):
            store.evaluate_current_vectors(lambda x: float("nan"))

    def test_write_carry_advance(self):
        """Next-generation writes are clipped and become current on advance."""
        store = self.make_store(total=4)
        store.create_initial_population(NumpyDraws(seed=0))
        store.evaluate_current_vectors(sphere)
        kept = store.current[1].copy()

        store.write_next(0, np.array([7.0, 0.0]), 25.0)
        for i in range(1, 4):
            store.carry_over(i)
        store.advance()

        assert np.array_equal(store.current[0], [5.0, 0.0])
        assert store.current_fitness[0] == 25.0
        assert np.array_equal(store.current[1], kept)

    def test_individual_snapshot(self):
        """individual() copies vector and fitness."""
        store = self.make_store(total=4)
        store.create_initial_population(NumpyDraws(seed=0))
        assert store.individual(0).fitness is None

        store.evaluate_current_vectors(sphere)
        ind = store.individual(0)
        ind.vector[0] = 100.0

        assert ind.evaluated
        assert store.current[0, 0] != 100.0

    def test_rank_indices_stable(self):
        """Ranking is best first and keeps ties in population order."""
        fitness = np.array([3.0, 1.0, 3.0, 0.5])

        assert rank_indices(fitness, minimize=True).tolist() == [3, 1, 0, 2]
        assert rank_indices(fitness, minimize=False).tolist() == [0, 2, 1, 3]


class TestIndividual:
    """Tests for Individual."""

    def test_serialization(self):
        """Individual serializes to plain data."""
        ind = Individual(vector=np.array([1.0, 2.0]), fitness=3.5)
        restored = Individual.from_dict(ind.to_dict())

        assert np.array_equal(restored.vector, ind.vector)
        assert restored.fitness == 3.5


# ==================== Archive Tests ====================

def _individual(value):
    return Individual(vector=np.array([float(value)]), fitness=float(value))


class TestArchive:
    """Tests for Archive."""

    def test_queue_waits_for_commit(self):
        """Queued parents only join the archive on commit."""
        archive = Archive(capacity=3)
        archive.queue(_individual(1))

        assert len(archive) == 0
        assert archive.commit() == 1
        assert len(archive) == 1

    def test_clean_up_to_capacity(self):
        """Cleanup trims the archive down to its capacity."""
        archive = Archive(capacity=3)
        for k in range(5):
            archive.queue(_individual(k))
        archive.commit()

        assert archive.clean_up(NumpyDraws(seed=0)) == 2
        assert len(archive) == 3
        assert archive.clean_up(NumpyDraws(seed=0)) == 0

    def test_oldest_first(self):
        """Oldest-first trimming keeps the newest entries."""
        archive = Archive(capacity=3, strategy=OldestFirstTrim())
        for k in range(5):
            archive.queue(_individual(k))
        archive.commit()
        archive.clean_up(NumpyDraws(seed=0))

        assert archive.vectors(1).ravel().tolist() == [2.0, 3.0, 4.0]

    def test_uniform_removals_distinct(self):
        """Uniform trimming picks distinct in-range indices."""
        draws = NumpyDraws(seed=7)
        for _ in range(20):
            removals = UniformTrim().select_removals(10, 4, draws)
            assert len(set(removals)) == 4
            assert all(0 <= k < 10 for k in removals)

    def test_queue_copies(self):
        """Archived entries do not alias population storage."""
        archive = Archive(capacity=2)
        vector = np.array([1.0])
        archive.queue(Individual(vector=vector, fitness=1.0))
        archive.commit()
        vector[0] = 9.0

        assert archive.vectors(1)[0, 0] == 1.0

    def test_empty_vectors_shape(self):
        """An empty archive yields a (0, dimension) array."""
        assert Archive(capacity=2).vectors(4).shape == (0, 4)

    def test_factory(self):
        """Strategies are created by name."""
        assert isinstance(create_trim_strategy("uniform"), UniformTrim)
        assert isinstance(create_trim_strategy("oldest"), OldestFirstTrim)
        with pytest.raises(ValueError):
            create_trim_strategy("newest")


# ==================== Adaptation Tests ====================

class TestMeans:
    """Tests for the success-set means."""

    def test_lehmer_mean(self):
        """Lehmer mean is sum(x^2) / sum(x)."""
        assert lehmer_mean([0.2, 0.8]) == pytest.approx(0.68)
        assert lehmer_mean([0.0, 0.0]) == 0.0

    def test_power_mean(self):
        """Power mean reduces to the arithmetic mean for exponent 1."""
        assert power_mean([0.25, 1.0], 1.0) == pytest.approx(0.625)
        assert power_mean([0.4, 0.4], 1.5) == pytest.approx(0.4)
        assert power_mean([0.1, 0.9], 1.5) > arithmetic_mean([0.1, 0.9])


class TestAdaptationState:
    """Tests for AdaptationState."""

    def test_update_moves_toward_successes(self):
        """One update mixes old mu and the success mean with rate c."""
        state = AdaptationState(adaptation_frequency_c=0.1, pmcrade=False)
        state.record_success(0.9, 0.7)
        state.update()

        assert state.mu_f == pytest.approx(0.54)
        assert state.mu_cr == pytest.approx(0.52)

    def test_update_clears_success_sets(self):
        """Success sets are emptied after every update."""
        state = AdaptationState()
        state.record_success(0.6, 0.6)
        state.update()

        assert state.successes == 0
        assert state.success_cr == []

    def test_empty_sets_leave_mu(self):
        """No successes, no change."""
        state = AdaptationState(mu_f=0.3, mu_cr=0.8)
        state.update()

        assert state.mu_f == 0.3
        assert state.mu_cr == 0.8

    def test_pooled_sets_override_local(self):
        """Pooled success sets replace the local ones."""
        state = AdaptationState(adaptation_frequency_c=1.0, pmcrade=False)
        state.record_success(0.1, 0.1)
        state.update(success_f=[0.5], success_cr=[0.9])

        assert state.mu_f == pytest.approx(0.5)
        assert state.mu_cr == pytest.approx(0.9)

    def test_mu_stays_in_unit_interval(self):
        """mu values stay in (0, 1] for arbitrary success sets."""
        rng = np.random.default_rng(42)
        state = AdaptationState(adaptation_frequency_c=1.0)
        for _ in range(200):
            n = int(rng.integers(1, 6))
            state.update(
                success_f=rng.choice([0.0, 1.0, rng.uniform()], size=n).tolist(),
                success_cr=rng.choice([0.0, 1.0, rng.uniform()], size=n).tolist(),
            )
            assert MU_FLOOR <= state.mu_f <= 1.0
            assert MU_FLOOR <= state.mu_cr <= 1.0

    def test_zero_successes_floor(self):
        """An all-zero success set drives mu to the floor, never to zero."""
        state = AdaptationState(adaptation_frequency_c=1.0)
        state.update(success_f=[0.0], success_cr=[0.0])

        assert state.mu_f == MU_FLOOR
        assert state.mu_cr == MU_FLOOR


# ==================== Operator Tests ====================

class TestControlParameters:
    """Tests for the F and CR draws."""

    def test_mutation_factor_resampled_and_truncated(self):
        """Non-positive draws are resampled; large ones truncated to 1."""
        draws = ScriptedDraws(cauchy=[-0.3, 0.0, 1.7])
        assert draw_mutation_factor(draws, 0.5) == 1.0

    def test_crossover_rate_clipped(self):
        """CR is clipped to [0, 1]."""
        assert draw_crossover_rate(ScriptedDraws(normal=[1.4]), 0.5) == 1.0
        assert draw_crossover_rate(ScriptedDraws(normal=[-0.2]), 0.5) == 0.0

    def test_pmcrade_crossover_rate(self):
        """PMCRADE combines two clipped draws with the power mean."""
        draws = ScriptedDraws(normal=[0.25, 1.0])
        cr = draw_crossover_rate(draws, 0.5, pmcrade=True, exponent=1.0)

        assert cr == pytest.approx(0.625)

    def test_ranges(self):
        """F in (0, 1] and CR in [0, 1] over many real draws."""
        draws = NumpyDraws(seed=11)
        for mu in (MU_FLOOR, 0.5, 1.0):
            for _ in range(500):
                f, cr = draw_control_parameters(draws, mu, mu, pmcrade=True)
                assert 0.0 < f <= 1.0
                assert 0.0 <= cr <= 1.0


class TestMutation:
    """Tests for current-to-pbest/1 mutation."""

    def test_pbest_count(self):
        """At least one and at most all individuals are eligible."""
        assert pbest_count(40, 0.05) == 2
        assert pbest_count(10, 0.01) == 1
        assert pbest_count(5, 1.0) == 5

    def test_sampling_pool_member(self):
        """Pool members index population first, then archive."""
        pool = SamplingPool.build(
            np.array([[0.0], [1.0]]),
            np.array([0.0, 1.0]),
            archive=np.array([[7.0]]),
        )
        assert pool.member(1)[0] == 1.0
        assert pool.member(2)[0] == 7.0

    def test_difference_vector(self):
        """v = x_i + F (x_pbest - x_i) + F (x_r1 - x_r2)."""
        pool = SamplingPool.build(
            np.array([[0.0], [1.0], [2.0], [3.0]]),
            np.array([3.0, 2.0, 1.0, 0.0]),
            best_share_p=0.25,
        )
        # pbest -> rank 0 (index 3), r1 -> index 2, r2 -> index 1
        draws = ScriptedDraws(integer=[0, 1, 0])
        v = mutate(pool.vectors[0], 0, 0.5, pool, Bounds([-10.0], [10.0]), draws)

        assert v[0] == pytest.approx(2.0)

    def test_mutant_clipped(self):
        """Mutants are clipped to the box."""
        rng = np.random.default_rng(42)
        vectors = rng.uniform(-1.0, 1.0, size=(10, 3))
        pool = SamplingPool.build(vectors, rng.uniform(size=10), archive=vectors[:4] * 50)
        bounds = Bounds.uniform(-1.0, 1.0, 3)
        draws = NumpyDraws(seed=2)

        for i in range(10):
            assert bounds.contains(mutate(vectors[i], i, 1.0, pool, bounds, draws))


class TestCrossover:
    """Tests for binomial crossover."""

    def test_mask_and_forced_dimension(self):
        """Dimensions below CR and j_rand come from the mutant."""
        draws = ScriptedDraws(uniform=[0.1, 0.9, 0.9], integer=[2])
        trial = crossover(np.zeros(3), np.ones(3), 0.5, draws)

        assert trial.tolist() == [1.0, 0.0, 1.0]

    def test_differs_at_zero_rate(self):
        """At CR 0 the trial still takes the differing mutant dimension."""
        parent = np.zeros(6)
        mutant = parent.copy()
        mutant[4] = 1.0
        draws = NumpyDraws(seed=3)

        for _ in range(50):
            trial = crossover(parent, mutant, 0.0, draws)
            assert not np.array_equal(trial, parent)

    def test_full_rate_copies_mutant(self):
        """At CR 1 the trial is the mutant."""
        mutant = np.arange(4.0)
        trial = crossover(np.zeros(4), mutant, 1.0, NumpyDraws(seed=3))

        assert np.array_equal(trial, mutant)


class TestSelection:
    """Tests for the selection test."""

    def test_ties_accepted(self):
        """Equal fitness is a success in both directions."""
        assert is_at_least_as_good(1.0, 1.0, minimize=True)
        assert is_at_least_as_good(1.0, 1.0, minimize=False)

    def test_direction(self):
        """Better means lower when minimizing, higher when maximizing."""
        assert is_at_least_as_good(0.5, 1.0, minimize=True)
        assert not is_at_least_as_good(0.5, 1.0, minimize=False)


# ==================== Fitness Tests ====================

class TestFitnessFunction:
    """Tests for FitnessFunction and benchmarks."""

    def test_counts_evaluations(self):
        """Every call is counted."""
        fn = FitnessFunction(sphere)
        fn(np.ones(3))
        fn.evaluate(np.ones(3))

        assert fn.evaluations == 2
        assert fn.name == "sphere"

    def test_not_callable(self):
        """Non-callables are rejected."""
        with pytest.raises(ConfigurationError):
            FitnessFunction(42)

    def test_non_finite(self):
        """Infinite values are rejected."""
        fn = FitnessFunction(lambda x: math.inf)
        with pytest.raises(EvaluationError):
            fn(np.zeros(2))

    def test_failures_become_evaluation_errors(self):
        """Exceptions and non-numeric results surface as EvaluationError."""
        def broken(x):
            raise RuntimeError("model crashed")

        with pytest.raises(EvaluationError, match="model crashed"):
            FitnessFunction(broken)(np.zeros(2))
        with pytest.raises(EvaluationError):
            FitnessFunction(lambda x: None)(np.zeros(2))
        with pytest.raises(EvaluationError):
            FitnessFunction(lambda x: "high")(np.zeros(2))

    def test_does_not_see_engine_storage(self):
        """The callable receives a copy of the vector."""
        x = np.zeros(2)

        def meddle(v):
            v[0] = 5.0
            return 0.0

        FitnessFunction(meddle)(x)
        assert x[0] == 0.0

    def test_benchmark_optima(self):
        """Benchmarks reach their optimum at the documented point."""
        assert sphere(np.zeros(4)) == 0.0
        assert shifted_sphere(np.full(4, 3.0)) == 0.0
        assert rastrigin(np.zeros(4)) == pytest.approx(0.0)
        assert rosenbrock(np.ones(4)) == 0.0

    def test_get_benchmark(self):
        """Benchmarks are looked up by name with their direction."""
        assert get_benchmark("rastrigin").name == "rastrigin"
        assert benchmark_minimizes("sphere")
        assert not benchmark_minimizes("shifted_sphere")
        with pytest.raises(ConfigurationError):
            get_benchmark("ackley")
