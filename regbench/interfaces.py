"""Interfaces and base classes.

Classes:
    SearchMethodTypes: Supported neighbor search strategies.
    RegistrationConfiguration: A named registration algorithm variant and its options.
    RegistrationResult: Aligned point cloud, fitness and timings of one benchmarked configuration.
    RegistrationInterface: Interface for all registration classes.
"""
import copy
import logging
from abc import ABC, abstractmethod
from enum import Flag, auto
from typing import Any, Dict, Tuple, Union

import numpy as np
import open3d as o3d

from .exceptions import ConfigError

PointCloud = o3d.geometry.PointCloud

logger = logging.getLogger(__name__)


class SearchMethodTypes(Flag):
    """Supported neighbor search strategies."""
    KDTREE = auto()
    DIRECT7 = auto()
    DIRECT1 = auto()


def eval_search_method(search_method: Union[SearchMethodTypes, str]) -> SearchMethodTypes:
    """Evaluates a search method given as enum member or (case-insensitive) name.

    Args:
        search_method: The search method or its name.

    Raises:
        ConfigError: If `search_method` doesn't name one of `SearchMethodTypes`.

    Returns:
        The search method.
    """
    if isinstance(search_method, SearchMethodTypes):
        return search_method
    if isinstance(search_method, str) and search_method.upper() in SearchMethodTypes.__members__:
        return SearchMethodTypes[search_method.upper()]
    raise ConfigError(f"`search_method` must be one of {list(SearchMethodTypes.__members__)} but is {search_method}.")


def _is_positive_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
        return False
    return value > 0


class RegistrationConfiguration:
    """A named registration algorithm variant and its options.

    Attributes:
        algorithm: The identity of the registration algorithm, e.g. `pcl_gicp` or `pclomp_ndt`.
        resolution: The cell size of distribution based algorithms.
        num_threads: The number of threads the algorithm may use.
        search_method: The neighbor search strategy.
    """

    def __init__(self,
                 algorithm: str,
                 resolution: Union[float, None] = None,
                 num_threads: Union[int, None] = None,
                 search_method: Union[SearchMethodTypes, str, None] = None) -> None:
        self.algorithm = algorithm
        self.resolution = resolution
        self.num_threads = num_threads
        self.search_method = None if search_method is None else eval_search_method(search_method)

    @property
    def name(self) -> str:
        """The artifact name, e.g. `pclomp_ndt_KDTREE_4_threads` or just `pcl_gicp`."""
        if self.search_method is not None and self.num_threads is not None:
            return f"{self.algorithm}_{self.search_method.name}_{self.num_threads}_threads"
        return self.algorithm

    @property
    def options(self) -> Dict[str, Any]:
        """The options that are set, suitable for `RegistrationInterface.reconfigure`."""
        options = {"resolution": self.resolution,
                   "num_threads": self.num_threads,
                   "search_method": self.search_method}
        return {key: value for key, value in options.items() if value is not None}

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, RegistrationConfiguration):
            return NotImplemented
        return self.algorithm == other.algorithm and self.options == other.options

    def __hash__(self) -> int:
        return hash((self.algorithm, self.resolution, self.num_threads, self.search_method))

    def __repr__(self) -> str:
        options = ", ".join(f"{key}={value}" for key, value in self.options.items())
        return f"RegistrationConfiguration({self.algorithm}{', ' + options if options else ''})"


class RegistrationResult:
    """Aligned point cloud, fitness and timings of one benchmarked configuration.

    Attributes:
        aligned: The source point cloud after the last alignment.
        transformation: The final 4x4 transformation of the source.
        fitness: Mean squared distance from aligned points to their nearest target point. Lower is better.
        single_runtime: Duration of the first alignment in seconds.
        repeated_runtime: Total duration of the `repeats` following alignments in seconds.
        repeats: How often alignment was repeated after the first run.
        converged: Whether the algorithm reported convergence in the last alignment.
    """

    def __init__(self,
                 aligned: PointCloud,
                 transformation: np.ndarray,
                 fitness: float,
                 single_runtime: float,
                 repeated_runtime: float,
                 repeats: int,
                 converged: bool = True):
        self.aligned = aligned
        self.transformation = transformation
        self.fitness = fitness
        self.single_runtime = single_runtime
        self.repeated_runtime = repeated_runtime
        self.repeats = repeats
        self.converged = converged


class RegistrationInterface(ABC):
    """Interface for registration subclasses. Handles binding, reconfiguration and fitness evaluation.

    An instance is a stateful handle around one external registration engine. It is bound to a target and a source
    once and may then be aligned any number of times. Reconfiguration has to complete before the next alignment and
    an instance must never be shared between concurrent callers.

    Attributes:
        name: The name of the registration algorithm.
        supported_options: Options `reconfigure` applies. Others are ignored.
        max_correspondence_distance: Maximum correspondence points-pair distance.
        max_iteration: Maximum number of iterations per alignment.
        transformation: The transformation found by the last alignment.
        converged: Whether the last alignment converged.
        _target: The bound target point cloud.
        _source: The bound source point cloud.
        _aligned: The source point cloud transformed by the last alignment.

    Methods:
        set_input_target(target): Binds the target point cloud.
        set_input_source(source): Binds the source point cloud.
        bind(target, source): Binds target and source point cloud.
        reconfigure(**options): Applies option values, ignoring unsupported options.
        align(init): Runs one alignment and returns the aligned source.
        get_fitness_score(): Returns the fitness of the last alignment.
    """
    supported_options: Tuple[str, ...] = ()

    def __init__(self,
                 name: str,
                 max_correspondence_distance: float = 1.0,
                 max_iteration: int = 64) -> None:
        """
        Args:
            name: The name of the registration algorithm.
            max_correspondence_distance: Maximum correspondence points-pair distance.
            max_iteration: Maximum number of iterations per alignment.
        """
        self.name = name
        self.max_correspondence_distance = max_correspondence_distance
        self.max_iteration = max_iteration
        self.transformation = np.eye(4)
        self.converged = False
        self._target = None
        self._source = None
        self._aligned = None

    def set_input_target(self, target: PointCloud) -> None:
        """Binds the target point cloud.

        Args:
            target: The target point cloud.
        """
        self._target = target
        self._aligned = None

    def set_input_source(self, source: PointCloud) -> None:
        """Binds the source point cloud.

        Args:
            source: The source point cloud.
        """
        self._source = source
        self._aligned = None

    def bind(self, target: PointCloud, source: PointCloud) -> None:
        """Binds target and source point cloud. Expensive preparation of search structures happens here.

        Args:
            target: The target point cloud.
            source: The source point cloud.
        """
        self.set_input_target(target)
        self.set_input_source(source)

    def reconfigure(self, **options: Any) -> None:
        """Applies option values. Options not in `supported_options` are ignored.

        Args:
            options: Any of `resolution`, `num_threads`, `search_method`, `max_correspondence_distance` and
                     `max_iteration`.

        Raises:
            ConfigError: If a supported option has an invalid value.
        """
        for key, value in options.items():
            if key in ["max_correspondence_distance", "max_iteration"]:
                if not _is_positive_number(value):
                    raise ConfigError(f"`{key}` needs to be a positive number but is {value!r}.")
                setattr(self, key, int(value) if key == "max_iteration" else float(value))
            elif key not in self.supported_options:
                logger.debug(f"{self.name} ignores unsupported option {key}={value}.")
            elif key == "resolution":
                if not _is_positive_number(value):
                    raise ConfigError(f"`resolution` needs to be a positive number but is {value!r}.")
                self.resolution = float(value)
            elif key == "num_threads":
                if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
                    raise ConfigError(f"`num_threads` needs to be a positive integer but is {value!r}.")
                self.num_threads = int(value)
            elif key == "search_method":
                self.search_method = eval_search_method(value)

    def _check_bound(self) -> None:
        if self._target is None or self._source is None:
            raise RuntimeError(f"{self.name}: target and source need to be bound before alignment.")

    @abstractmethod
    def _align(self, init: np.ndarray) -> Tuple[np.ndarray, bool]:
        """Runs the registration algorithm of the derived class once.

        Args:
            init: The initial 4x4 pose of the source.

        Raises:
            NotImplementedError: A derived class should implement this method.

        Returns:
            The 4x4 transformation aligning source to target and whether the algorithm converged.
        """
        raise NotImplementedError("A derived class should implement this method.")

    def align(self, init: Union[np.ndarray, list] = np.eye(4)) -> PointCloud:
        """Runs one alignment of the bound source to the bound target.

        Args:
            init: The initial 4x4 pose of the source.

        Returns:
            A new point cloud holding the source transformed by the found transformation.
        """
        self._check_bound()
        transformation, converged = self._align(init=np.asarray(init, dtype=np.float64).reshape(4, 4))
        self.transformation = np.asarray(transformation, dtype=np.float64).reshape(4, 4)
        self.converged = bool(converged)
        self._aligned = copy.deepcopy(self._source).transform(self.transformation)
        return self._aligned

    def get_fitness_score(self) -> float:
        """Returns the fitness of the last alignment.

        The fitness is the mean squared distance of each aligned source point to its nearest target point.

        Raises:
            RuntimeError: If nothing was aligned since the last binding.

        Returns:
            The fitness score. Lower is better.
        """
        if self._aligned is None:
            raise RuntimeError(f"{self.name}: no alignment to evaluate.")
        distances = np.asarray(self._aligned.compute_point_cloud_distance(self._target))
        if len(distances) == 0:
            return float("inf")
        return float(np.mean(np.square(distances)))
