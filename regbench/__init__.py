"""A benchmarking harness for point cloud registration algorithms.

Files:
    __init__.py: This file.
    benchmark.py: The registration driver and the benchmark orchestrator.
    diagnostics.py: Process memory usage reporting.
    exceptions.py: Exceptions raised throughout the project.
    interfaces.py: Interfaces and base classes.
    registration.py: Registration algorithm adapters around Open3D and small_gicp.
    utils.py: Point cloud I/O, downsampling and visualization.

Classes:
    registration.GeneralizedICP: Sequential Generalized ICP baseline (Open3D).
    registration.ParallelGeneralizedICP: Multi-threaded Generalized ICP (small_gicp).
    registration.NormalDistributionsTransform: Single-threaded voxelized distribution registration (small_gicp).
    registration.ParallelNormalDistributionsTransform: Reconfigurable multi-threaded variant of the above.
    interfaces.RegistrationInterface: Interface for all registration classes.
    interfaces.RegistrationConfiguration: A named algorithm variant and its options.
    interfaces.RegistrationResult: Aligned cloud, fitness and timings of one benchmarked configuration.
    interfaces.SearchMethodTypes: Supported neighbor search strategies.
    benchmark.BenchmarkRun: One configuration mapped to its result and artifacts.

Functions:
    get_logger: Returns the package-wide logger
    set_logger_level: Sets the package-wide logger level.
    utils.read_point_cloud: Reads point cloud data from file.
    utils.write_point_cloud: Writes point cloud data to file.
    utils.downsample: Voxel grid downsampling anchored at the origin.
    utils.draw_registration_result: Draws target, source and aligned clouds in distinct colors.
    benchmark.align: Times one registration algorithm on a target and source cloud.
    benchmark.build_configurations: Enumerates the benchmark parameter sweep.
    benchmark.run_benchmark_suite: Runs the whole sweep and persists artifacts.
    diagnostics.report_memory_usage: Renders the process memory counters as a table.
"""

import logging

logger = logging.getLogger(__name__)


def get_logger() -> logging.Logger:
    """Returns the package-wide logger.

    Returns:
        logging.Logger: The package-wide logger.
    """
    return logger


def set_logger_level(level: int) -> None:
    """Sets the package-wide logger level.

    Args:
        level (int): The logger level.
    """
    logger.setLevel(level=level)
