"""The registration driver and the benchmark orchestrator.

Classes:
    BenchmarkRun: One configuration mapped to its result (or error) and the artifacts written for it.

Functions:
    align: Times one registration algorithm on a target and source point cloud.
    build_configurations: Enumerates the benchmark parameter sweep.
    save_artifacts: Writes source, target and aligned point cloud of one run.
    run_benchmark_suite: Runs the sweep configuration by configuration and persists artifacts.
    print_results: Pretty-prints a summary table of benchmark runs.
"""
import logging
import os
import sys
import time
from multiprocessing import cpu_count
from typing import Callable, Dict, Iterator, List, Sequence, Union

import numpy as np
import open3d as o3d
import tabulate
import tqdm

from .exceptions import AlignmentFailure, ConfigError, SaveError
from .interfaces import RegistrationConfiguration, RegistrationInterface, RegistrationResult, SearchMethodTypes
from .registration import make_registration
from .utils import write_point_cloud

PointCloud = o3d.geometry.PointCloud

logger = logging.getLogger(__name__)


class BenchmarkRun:
    """One configuration mapped to its result (or error) and the artifacts written for it.

    Attributes:
        configuration: The benchmarked configuration.
        result: The registration result. `None` if the configuration failed.
        artifacts: Paths of the point cloud files written for this run.
        error: The exception that made the configuration fail, if any.
    """

    def __init__(self,
                 configuration: RegistrationConfiguration,
                 result: Union[RegistrationResult, None] = None,
                 artifacts: Union[List[str], None] = None,
                 error: Union[Exception, None] = None):
        self.configuration = configuration
        self.result = result
        self.artifacts = list() if artifacts is None else artifacts
        self.error = error

    @property
    def name(self) -> str:
        return self.configuration.name

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.result is not None


def align(registration: RegistrationInterface,
          target: PointCloud,
          source: PointCloud,
          repeats: int = 10,
          init: Union[np.ndarray, list] = np.eye(4),
          verbose: bool = True) -> RegistrationResult:
    """Times one registration algorithm on a target and source point cloud.

    The algorithm is bound once, aligned once (timed on its own) and then aligned `repeats` more times without
    rebinding (timed in aggregate). The second figure reflects warm, steady-state performance.

    Args:
        registration: The registration algorithm.
        target: The target point cloud.
        source: The source point cloud.
        repeats: Number of alignments timed in aggregate after the first one.
        init: The initial pose of `source`.
        verbose: Print timings and fitness to stdout.

    Raises:
        ValueError: If `repeats` is smaller than one.
        AlignmentFailure: If the registration algorithm raises.

    Returns:
        The aligned source, fitness and timings.
    """
    if repeats < 1:
        raise ValueError(f"`repeats` needs to be at least 1 but is {repeats}.")

    try:
        registration.bind(target=target, source=source)

        start = time.perf_counter()
        aligned = registration.align(init=init)
        single_runtime = time.perf_counter() - start

        start = time.perf_counter()
        for _ in range(repeats):
            aligned = registration.align(init=init)
        repeated_runtime = time.perf_counter() - start

        fitness = registration.get_fitness_score()
    except Exception as e:
        raise AlignmentFailure(registration.name, f"{type(e).__name__}: {e}") from e

    if not registration.converged:
        logger.warning(f"{registration.name} did not converge.")
    logger.debug(f"{registration.name} took {single_runtime} seconds once and {repeated_runtime} seconds "
                 f"{repeats} times.")

    if verbose:
        print(f"single: {single_runtime * 1000} [msec]")
        print(f"{repeats} times: {repeated_runtime * 1000} [msec]")
        print(f"fitness: {fitness}")
        print()

    return RegistrationResult(aligned=aligned,
                              transformation=registration.transformation,
                              fitness=fitness,
                              single_runtime=single_runtime,
                              repeated_runtime=repeated_runtime,
                              repeats=repeats,
                              converged=registration.converged)


def build_configurations(resolution: float = 1.0,
                         thread_options: Union[Sequence[int], None] = None,
                         search_methods: Union[Sequence[Union[SearchMethodTypes, str]], None] = None
                         ) -> List[RegistrationConfiguration]:
    """Enumerates the benchmark parameter sweep.

    The sweep is the sequential GICP baseline, the parallel GICP, the NDT baseline and then every combination of
    thread count and neighbor search strategy for the parallel NDT, thread count varying slowest.

    Args:
        resolution: The NDT cell size.
        thread_options: Thread counts of the parallel NDT. Defaults to one and all available threads. `-1` stands for
                        all available threads. Duplicates are dropped to keep artifact names unique.
        search_methods: Neighbor search strategies of the parallel NDT. Defaults to all `SearchMethodTypes`.

    Returns:
        The configurations in benchmark order.
    """
    if thread_options is None:
        thread_options = [1, cpu_count()]
    if search_methods is None:
        search_methods = [SearchMethodTypes.KDTREE, SearchMethodTypes.DIRECT7, SearchMethodTypes.DIRECT1]

    _thread_options = list()
    for num_threads in thread_options:
        num_threads = cpu_count() if num_threads == -1 else num_threads
        if num_threads in _thread_options:
            logger.debug(f"Dropping duplicate thread count {num_threads}.")
        else:
            _thread_options.append(num_threads)

    configurations = [RegistrationConfiguration("pcl_gicp"),
                      RegistrationConfiguration("pclomp_gicp"),
                      RegistrationConfiguration("pcl_ndt", resolution=resolution)]
    for num_threads in _thread_options:
        for search_method in search_methods:
            configurations.append(RegistrationConfiguration("pclomp_ndt",
                                                            resolution=resolution,
                                                            num_threads=num_threads,
                                                            search_method=search_method))
    return configurations


def save_artifacts(name: str,
                   source: PointCloud,
                   target: PointCloud,
                   aligned: PointCloud,
                   output_dir: str = "pcd",
                   extension: str = ".pcd") -> List[str]:
    """Writes source, target and aligned point cloud of one run as `<output_dir>/<name>_<role><extension>`.

    Failures are logged and skipped.

    Args:
        name: The configuration name.
        source: The source point cloud.
        target: The target point cloud.
        aligned: The aligned source point cloud.
        output_dir: The output directory.
        extension: The file extension, determining the file format.

    Returns:
        The paths of the files that were written.
    """
    written = list()
    for role, point_cloud in [("source", source), ("target", target), ("aligned", aligned)]:
        filename = os.path.join(output_dir, f"{name}_{role}{extension}")
        try:
            write_point_cloud(filename=filename, point_cloud=point_cloud)
            written.append(filename)
        except SaveError as e:
            logger.error(str(e))
    return written


def run_benchmark_suite(target: PointCloud,
                        source: PointCloud,
                        configurations: Union[List[RegistrationConfiguration], None] = None,
                        output_dir: Union[str, None] = "pcd",
                        extension: str = ".pcd",
                        repeats: int = 10,
                        fail_fast: bool = False,
                        progress: bool = False,
                        verbose: bool = True,
                        registration_factory: Callable[..., RegistrationInterface] = make_registration,
                        **options) -> Iterator[BenchmarkRun]:
    """Runs the sweep configuration by configuration and persists artifacts.

    Configurations run strictly one after another. One registration instance is created per algorithm and reused,
    being reconfigured before each of its configurations, so runs depend on their predecessors and the sweep can't be
    resumed midway.

    Args:
        target: The target point cloud.
        source: The source point cloud.
        configurations: The configurations to run. Defaults to `build_configurations()`.
        output_dir: Directory for the artifacts. Created if missing. If it can't be created, the runs still happen and
                    each artifact that can't be written is logged. Nothing is written if `None`.
        extension: File extension of the artifacts.
        repeats: Number of aggregated alignments per configuration after the first one.
        fail_fast: Stop the sweep at the first failing configuration instead of reporting and skipping it.
        progress: Show a progress bar.
        verbose: Print a header, timings and fitness per configuration.
        registration_factory: Creates a registration instance from an algorithm name and options.
        options: Further options applied to every registration instance, e.g. `max_correspondence_distance`.

    Raises:
        AlignmentFailure: If a configuration fails and `fail_fast` is set.
        ConfigError: If a configuration is invalid and `fail_fast` is set.

    Yields:
        One benchmark run per configuration.
    """
    if configurations is None:
        configurations = build_configurations()
    if output_dir is not None:
        try:
            os.makedirs(output_dir, exist_ok=True)
        except OSError as e:
            # `save_artifacts` reports every file it can't write.
            logger.error(str(SaveError(output_dir, f"can't create directory: {e}")))

    registrations: Dict[str, RegistrationInterface] = dict()
    for configuration in tqdm.tqdm(configurations, desc="Benchmark", file=sys.stdout, disable=not progress):
        if verbose:
            print(f"--- {configuration.name} ---")
        try:
            registration = registrations.get(configuration.algorithm)
            if registration is None:
                logger.debug(f"Creating {configuration.algorithm}.")
                registration = registration_factory(configuration.algorithm, **options)
                registrations[configuration.algorithm] = registration
            registration.reconfigure(**configuration.options)
            result = align(registration=registration, target=target, source=source, repeats=repeats, verbose=verbose)
        except (AlignmentFailure, ConfigError) as e:
            if fail_fast:
                raise
            logger.error(f"Skipping {configuration.name}: {e}")
            yield BenchmarkRun(configuration=configuration, error=e)
            continue

        artifacts = list()
        if output_dir is not None:
            artifacts = save_artifacts(name=configuration.name,
                                       source=source,
                                       target=target,
                                       aligned=result.aligned,
                                       output_dir=output_dir,
                                       extension=extension)
        yield BenchmarkRun(configuration=configuration, result=result, artifacts=artifacts)


def print_results(runs: List[BenchmarkRun]) -> None:
    """Pretty-prints a summary table of benchmark runs.

    Args:
        runs: The benchmark runs.
    """
    rows = list()
    for run in runs:
        if run.succeeded:
            rows.append((run.name,
                         run.result.single_runtime * 1000,
                         run.result.repeated_runtime * 1000,
                         run.result.fitness,
                         run.result.converged,
                         "ok"))
        else:
            rows.append((run.name, "-", "-", "-", "-", f"failed: {run.error}"))
    print()
    print("RESULTS:\n=======")
    print(tabulate.tabulate(rows, headers=["configuration",
                                           "single [msec]",
                                           "repeated [msec]",
                                           "fitness",
                                           "converged",
                                           "status"]))
