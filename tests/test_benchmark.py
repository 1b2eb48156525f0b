"""Tests for the registration driver and the benchmark orchestrator."""
import copy
import os

import numpy as np
import pytest

from .context import benchmark, exceptions, interfaces, registration, utils


class CountingRegistration(interfaces.RegistrationInterface):
    """Registration stand-in returning a fixed translation and counting calls."""
    supported_options = ("resolution", "num_threads", "search_method")

    def __init__(self, name="counting", fail_on=None, **kwargs):
        super().__init__(name=name, **kwargs)
        self.resolution = 1.0
        self.num_threads = 1
        self.search_method = interfaces.SearchMethodTypes.KDTREE
        self.fail_on = fail_on
        self.n_binds = 0
        self.n_aligns = 0
        self.reconfigurations = list()

    def bind(self, target, source):
        super().bind(target=target, source=source)
        self.n_binds += 1

    def reconfigure(self, **options):
        super().reconfigure(**options)
        self.reconfigurations.append(options)

    def _align(self, init):
        if self.fail_on is not None and self.search_method == self.fail_on:
            raise RuntimeError("did not converge")
        self.n_aligns += 1
        # Some work so that timings are measurably positive.
        np.linalg.svd(np.random.random((50, 50)))
        transformation = np.eye(4)
        transformation[:3, 3] = [0.1, 0.0, 0.0]
        return transformation, True


@pytest.fixture
def target():
    rng = np.random.default_rng(seed=1)
    return utils.get_point_cloud_from_points(rng.uniform(low=0.0, high=3.0, size=(1000, 3)))


@pytest.fixture
def source(target):
    return copy.deepcopy(target).translate([-0.1, 0.0, 0.0])


@pytest.fixture
def configurations():
    return benchmark.build_configurations(thread_options=[1, 4])


@pytest.fixture
def factory():
    instances = dict()

    def _factory(algorithm, **options):
        instance = CountingRegistration(name=algorithm, fail_on=options.pop("fail_on", None))
        instance.reconfigure(**options)
        instances[algorithm] = instance
        return instance

    _factory.instances = instances
    return _factory


class TestAlign:

    def test_protocol(self, target, source):
        counting = CountingRegistration()
        result = benchmark.align(counting, target=target, source=source, repeats=10, verbose=False)
        assert counting.n_binds == 1
        assert counting.n_aligns == 11
        assert result.repeats == 10

    def test_timings_positive(self, target, source):
        result = benchmark.align(CountingRegistration(), target=target, source=source, verbose=False)
        assert result.single_runtime > 0
        assert result.repeated_runtime > 0

    def test_result(self, target, source):
        result = benchmark.align(CountingRegistration(), target=target, source=source, repeats=2, verbose=False)
        assert len(result.aligned.points) == len(source.points)
        assert np.allclose(result.transformation[:3, 3], [0.1, 0.0, 0.0])
        assert result.fitness == pytest.approx(0.0, abs=1e-12)
        assert result.converged

    def test_inputs_untouched(self, target, source):
        source_points = np.asarray(source.points).copy()
        benchmark.align(CountingRegistration(), target=target, source=source, repeats=1, verbose=False)
        assert np.array_equal(np.asarray(source.points), source_points)

    def test_prints_timings(self, target, source, capsys):
        benchmark.align(CountingRegistration(), target=target, source=source, repeats=3)
        out = capsys.readouterr().out
        assert "single: " in out
        assert "3 times: " in out
        assert "fitness: " in out

    def test_failure_is_wrapped(self, target, source):
        failing = CountingRegistration(fail_on=interfaces.SearchMethodTypes.KDTREE)
        with pytest.raises(exceptions.AlignmentFailure) as e:
            benchmark.align(failing, target=target, source=source, verbose=False)
        assert isinstance(e.value.__cause__, RuntimeError)
        assert "counting" in str(e.value)

    def test_invalid_repeats(self, target, source):
        with pytest.raises(ValueError):
            benchmark.align(CountingRegistration(), target=target, source=source, repeats=0)


class TestBuildConfigurations:

    def test_order_and_names(self, configurations):
        assert [c.name for c in configurations] == ["pcl_gicp",
                                                    "pclomp_gicp",
                                                    "pcl_ndt",
                                                    "pclomp_ndt_KDTREE_1_threads",
                                                    "pclomp_ndt_DIRECT7_1_threads",
                                                    "pclomp_ndt_DIRECT1_1_threads",
                                                    "pclomp_ndt_KDTREE_4_threads",
                                                    "pclomp_ndt_DIRECT7_4_threads",
                                                    "pclomp_ndt_DIRECT1_4_threads"]

    def test_resolution(self):
        configurations = benchmark.build_configurations(resolution=0.5, thread_options=[1, 2])
        assert [c.resolution for c in configurations] == [None, None] + [0.5] * 7

    def test_default_names_unique(self):
        names = [c.name for c in benchmark.build_configurations()]
        assert len(names) == len(set(names))
        assert len(names) in [6, 9]

    def test_all_threads_placeholder(self):
        configurations = benchmark.build_configurations(thread_options=[-1], search_methods=["DIRECT1"])
        assert configurations[-1].num_threads == os.cpu_count()

    def test_duplicate_thread_counts_dropped(self):
        assert len(benchmark.build_configurations(thread_options=[2, 2])) == 3 + 3


class TestRunBenchmarkSuite:

    def test_yields_one_run_per_configuration(self, target, source, configurations, factory, tmp_path):
        runs = list(benchmark.run_benchmark_suite(target, source,
                                                  configurations=configurations,
                                                  output_dir=str(tmp_path),
                                                  repeats=1,
                                                  verbose=False,
                                                  registration_factory=factory))
        assert len(runs) == 3 + 2 * 3
        assert [run.configuration for run in runs] == configurations
        assert all(run.succeeded for run in runs)

    def test_reuses_and_reconfigures_one_instance_per_algorithm(self, target, source, configurations, factory):
        list(benchmark.run_benchmark_suite(target, source,
                                           configurations=configurations,
                                           output_dir=None,
                                           repeats=1,
                                           verbose=False,
                                           registration_factory=factory))
        assert sorted(factory.instances) == ["pcl_gicp", "pcl_ndt", "pclomp_gicp", "pclomp_ndt"]
        ndt = factory.instances["pclomp_ndt"]
        assert ndt.n_binds == 6
        assert ndt.reconfigurations[-1] == {"resolution": 1.0,
                                            "num_threads": 4,
                                            "search_method": interfaces.SearchMethodTypes.DIRECT1}

    def test_is_lazy(self, target, source, configurations, factory):
        runs = benchmark.run_benchmark_suite(target, source,
                                             configurations=configurations,
                                             output_dir=None,
                                             repeats=1,
                                             verbose=False,
                                             registration_factory=factory)
        assert next(runs).name == "pcl_gicp"
        assert sorted(factory.instances) == ["pcl_gicp"]

    def test_writes_artifacts(self, target, source, configurations, factory, tmp_path):
        output_dir = tmp_path / "out"
        runs = list(benchmark.run_benchmark_suite(target, source,
                                                  configurations=configurations,
                                                  output_dir=str(output_dir),
                                                  repeats=1,
                                                  verbose=False,
                                                  registration_factory=factory))
        for run in runs:
            expected = [str(output_dir / f"{run.name}_{role}.pcd") for role in ["source", "target", "aligned"]]
            assert run.artifacts == expected
            assert all(os.path.isfile(path) for path in expected)
        aligned = utils.read_point_cloud(str(output_dir / "pcl_gicp_aligned.pcd"))
        assert len(aligned.points) == len(source.points)

    def test_save_errors_are_not_fatal(self, target, source, factory, tmp_path, monkeypatch, caplog):
        def failing_write(filename, point_cloud, write_ascii=True):
            raise exceptions.SaveError(filename)

        monkeypatch.setattr(benchmark, "write_point_cloud", failing_write)
        runs = list(benchmark.run_benchmark_suite(target, source,
                                                  configurations=benchmark.build_configurations(thread_options=[1]),
                                                  output_dir=str(tmp_path),
                                                  repeats=1,
                                                  verbose=False,
                                                  registration_factory=factory))
        assert len(runs) == 6
        assert all(run.succeeded and run.artifacts == [] for run in runs)
        assert "failed to save" in caplog.text

    def test_uncreatable_output_dir_is_not_fatal(self, target, source, configurations, factory, tmp_path, caplog):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        runs = list(benchmark.run_benchmark_suite(target, source,
                                                  configurations=configurations,
                                                  output_dir=str(blocker / "out"),
                                                  repeats=1,
                                                  verbose=False,
                                                  registration_factory=factory))
        assert len(runs) == len(configurations)
        assert all(run.succeeded and run.artifacts == [] for run in runs)
        assert "can't create directory" in caplog.text
        assert "failed to save" in caplog.text

    def test_failures_are_reported_and_skipped(self, target, source, configurations, factory, caplog):
        runs = list(benchmark.run_benchmark_suite(target, source,
                                                  configurations=configurations,
                                                  output_dir=None,
                                                  repeats=1,
                                                  verbose=False,
                                                  registration_factory=factory,
                                                  fail_on=interfaces.SearchMethodTypes.DIRECT7))
        assert len(runs) == 9
        failed = [run.name for run in runs if not run.succeeded]
        assert failed == ["pclomp_ndt_DIRECT7_1_threads", "pclomp_ndt_DIRECT7_4_threads"]
        assert all(isinstance(run.error, exceptions.AlignmentFailure) for run in runs if not run.succeeded)
        assert "Skipping pclomp_ndt_DIRECT7_1_threads" in caplog.text

    def test_fail_fast(self, target, source, configurations, factory):
        runs = benchmark.run_benchmark_suite(target, source,
                                             configurations=configurations,
                                             output_dir=None,
                                             repeats=1,
                                             verbose=False,
                                             fail_fast=True,
                                             registration_factory=factory,
                                             fail_on=interfaces.SearchMethodTypes.DIRECT7)
        completed = list()
        with pytest.raises(exceptions.AlignmentFailure):
            for run in runs:
                completed.append(run.name)
        assert completed == ["pcl_gicp", "pclomp_gicp", "pcl_ndt", "pclomp_ndt_KDTREE_1_threads"]

    def test_invalid_configuration_is_skipped(self, target, source, factory):
        configurations = [interfaces.RegistrationConfiguration("pclomp_ndt", num_threads=0, search_method="KDTREE"),
                          interfaces.RegistrationConfiguration("pcl_gicp")]
        runs = list(benchmark.run_benchmark_suite(target, source,
                                                  configurations=configurations,
                                                  output_dir=None,
                                                  repeats=1,
                                                  verbose=False,
                                                  registration_factory=factory))
        assert isinstance(runs[0].error, exceptions.ConfigError)
        assert runs[1].succeeded


def test_scenario_with_library_registrations(tmp_path):
    """1000-point clouds, 0.1 leaf size, the full sweep with the real registration algorithms."""
    rng = np.random.default_rng(seed=2)
    target = utils.get_point_cloud_from_points(rng.uniform(low=0.0, high=3.0, size=(1000, 3)))
    source = copy.deepcopy(target).translate([0.05, 0.02, 0.0])

    target = utils.downsample(target, leaf_size=(0.1, 0.1, 0.1))
    source = utils.downsample(source, leaf_size=(0.1, 0.1, 0.1))
    assert len(target.points) <= 1000
    assert len(source.points) <= 1000

    runs = list(benchmark.run_benchmark_suite(target, source,
                                              configurations=benchmark.build_configurations(thread_options=[1, 2]),
                                              output_dir=str(tmp_path),
                                              repeats=2,
                                              verbose=False,
                                              fail_fast=True,
                                              registration_factory=registration.make_registration))
    assert len(runs) == 9
    for run in runs:
        assert len(run.result.aligned.points) == len(source.points)
        assert run.result.single_runtime > 0
        assert run.result.repeated_runtime > 0
    names = ["pcl_gicp", "pclomp_gicp", "pcl_ndt"] + [f"pclomp_ndt_{method}_{n}_threads"
                                                      for n in [1, 2]
                                                      for method in ["KDTREE", "DIRECT7", "DIRECT1"]]
    for name in names:
        for role in ["source", "target", "aligned"]:
            assert os.path.isfile(os.path.join(str(tmp_path), f"{name}_{role}.pcd"))


def test_print_results(capsys):
    configuration = interfaces.RegistrationConfiguration("pcl_gicp")
    result = interfaces.RegistrationResult(aligned=None,
                                           transformation=np.eye(4),
                                           fitness=0.25,
                                           single_runtime=0.002,
                                           repeated_runtime=0.02,
                                           repeats=10)
    failed = benchmark.BenchmarkRun(interfaces.RegistrationConfiguration("pcl_ndt"),
                                    error=exceptions.AlignmentFailure("pcl_ndt", "boom"))
    benchmark.print_results([benchmark.BenchmarkRun(configuration, result=result), failed])
    out = capsys.readouterr().out
    assert "pcl_gicp" in out
    assert "0.25" in out
    assert "failed: pcl_ndt failed: boom" in out
