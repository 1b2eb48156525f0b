"""Point cloud registration algorithm adapters.

The registration itself is delegated to external libraries: Open3D for the sequential Generalized ICP baseline and
small_gicp for the multi-threaded Generalized ICP and the voxelized distribution (NDT) variants. The classes here only
bind data, pass options and report results through `RegistrationInterface`.

Classes:
    GeneralizedICP: Sequential Generalized ICP baseline.
    ParallelGeneralizedICP: Multi-threaded Generalized ICP.
    NormalDistributionsTransform: Registration against a grid of Gaussian target distributions.
    ParallelNormalDistributionsTransform: Reconfigurable multi-threaded variant of `NormalDistributionsTransform`.

Functions:
    estimate_neighbor_count: Typical number of neighbors within a radius.
    make_registration: Instantiates a registration algorithm by its identity.
"""
import copy
import logging
from multiprocessing import cpu_count
from typing import Any, Tuple, Union

import numpy as np
import open3d as o3d
import small_gicp

from .interfaces import RegistrationInterface, SearchMethodTypes, eval_search_method

PointCloud = o3d.geometry.PointCloud
GeneralizedICPEstimation = o3d.pipelines.registration.TransformationEstimationForGeneralizedICP
ICPConvergenceCriteria = o3d.pipelines.registration.ICPConvergenceCriteria
KDTreeSearchParamKNN = o3d.geometry.KDTreeSearchParamKNN

logger = logging.getLogger(__name__)


def estimate_neighbor_count(point_cloud: PointCloud,
                            radius: float,
                            num_samples: int = 100,
                            min_neighbors: int = 5,
                            max_neighbors: int = 200) -> int:
    """Estimates how many neighbors a point of `point_cloud` typically has within `radius`.

    Args:
        point_cloud: The point cloud.
        radius: The search radius.
        num_samples: Number of evenly strided points the median is taken over.
        min_neighbors: Lower bound of the result. Covariances need a few points to be well-defined.
        max_neighbors: Upper bound of the result.

    Returns:
        The median neighbor count, clipped to `[min_neighbors, max_neighbors]` and to the point cloud size.
    """
    num_points = len(point_cloud.points)
    if num_points == 0:
        return min_neighbors
    tree = o3d.geometry.KDTreeFlann(point_cloud)
    points = np.asarray(point_cloud.points)
    indices = np.linspace(0, num_points - 1, num=min(num_samples, num_points), dtype=int)
    counts = [tree.search_radius_vector_3d(points[i], radius)[0] for i in indices]
    upper = max(1, min(max_neighbors, num_points))
    return int(np.clip(np.median(counts), min(min_neighbors, upper), upper))


class GeneralizedICP(RegistrationInterface):
    """The sequential *Generalized Iterative Closest Point* (GICP) algorithm as implemented by Open3D.

    Attributes:
        num_neighbors: Number of neighbors used to estimate per-point covariances.
        relative_fitness: If relative change (difference) of fitness score is lower than `relative_fitness`, the
                          iteration stops.
        relative_rmse: If relative change (difference) of inliner RMSE is lower than `relative_rmse`, the iteration
                       stops.
        criteria: The Open3D convergence criteria.
    """

    def __init__(self,
                 name: str = "pcl_gicp",
                 max_correspondence_distance: float = 1.0,
                 max_iteration: int = 64,
                 num_neighbors: int = 20,
                 relative_fitness: float = 1e-6,
                 relative_rmse: float = 1e-6) -> None:
        super().__init__(name=name,
                         max_correspondence_distance=max_correspondence_distance,
                         max_iteration=max_iteration)
        self.num_neighbors = num_neighbors
        self.relative_fitness = relative_fitness
        self.relative_rmse = relative_rmse
        self.criteria = None

    def bind(self, target: PointCloud, source: PointCloud) -> None:
        # Covariances are estimated on copies so the benchmark inputs stay untouched.
        _target = copy.deepcopy(target)
        _source = copy.deepcopy(source)
        _target.estimate_covariances(search_param=KDTreeSearchParamKNN(knn=self.num_neighbors))
        _source.estimate_covariances(search_param=KDTreeSearchParamKNN(knn=self.num_neighbors))
        super().bind(target=_target, source=_source)

    def _align(self, init: np.ndarray) -> Tuple[np.ndarray, bool]:
        self.criteria = ICPConvergenceCriteria(relative_fitness=self.relative_fitness,
                                               relative_rmse=self.relative_rmse,
                                               max_iteration=self.max_iteration)
        # noinspection PyTypeChecker
        result = o3d.pipelines.registration.registration_generalized_icp(
            source=self._source,
            target=self._target,
            max_correspondence_distance=self.max_correspondence_distance,
            init=init,
            estimation_method=GeneralizedICPEstimation(),
            criteria=self.criteria)
        logger.debug(f"{self.name} result: fitness={result.fitness}, inlier_rmse={result.inlier_rmse}.")
        # Open3D doesn't report convergence. Finding any correspondence is the closest it offers.
        return np.asarray(result.transformation), len(result.correspondence_set) > 0


class ParallelGeneralizedICP(RegistrationInterface):
    """Multi-threaded *Generalized Iterative Closest Point* (GICP) as implemented by small_gicp.

    Attributes:
        num_threads: Number of threads used for covariance estimation and correspondence search.
        num_neighbors: Number of neighbors used to estimate per-point covariances.
    """
    supported_options = ("num_threads",)

    def __init__(self,
                 name: str = "pclomp_gicp",
                 num_threads: int = cpu_count(),
                 max_correspondence_distance: float = 1.0,
                 max_iteration: int = 64,
                 num_neighbors: int = 20) -> None:
        super().__init__(name=name,
                         max_correspondence_distance=max_correspondence_distance,
                         max_iteration=max_iteration)
        self.num_threads = num_threads
        self.num_neighbors = num_neighbors
        self._target_points = None
        self._source_points = None
        self._target_tree = None
        self._bound_num_neighbors = None

    def _prepare(self, point_cloud: PointCloud, num_neighbors: int) -> Tuple[Any, Any]:
        points = small_gicp.PointCloud(np.asarray(point_cloud.points, dtype=np.float64))
        tree = small_gicp.KdTree(points, num_threads=self.num_threads)
        small_gicp.estimate_covariances(points, tree, num_neighbors=num_neighbors, num_threads=self.num_threads)
        return points, tree

    def _covariance_neighbors(self, target: PointCloud) -> int:
        return self.num_neighbors

    def bind(self, target: PointCloud, source: PointCloud) -> None:
        super().bind(target=target, source=source)
        self._bound_num_neighbors = self._covariance_neighbors(target)
        self._target_points, self._target_tree = self._prepare(target, self._bound_num_neighbors)
        self._source_points, _ = self._prepare(source, self._bound_num_neighbors)

    def _align(self, init: np.ndarray) -> Tuple[np.ndarray, bool]:
        result = small_gicp.align(self._target_points,
                                  self._source_points,
                                  self._target_tree,
                                  init_T_target_source=init,
                                  registration_type="GICP",
                                  max_correspondence_distance=self.max_correspondence_distance,
                                  num_threads=self.num_threads,
                                  max_iterations=self.max_iteration)
        logger.debug(f"{self.name} result: converged={result.converged}, iterations={result.iterations}, "
                     f"inliers={result.num_inliers}.")
        return np.asarray(result.T_target_source), result.converged


class NormalDistributionsTransform(ParallelGeneralizedICP):
    """Registration of source distributions against a grid of Gaussian target distributions (voxelized GICP).

    The target is modelled as a voxel grid with cell size `resolution`, each cell holding the Gaussian of the points
    falling into it. Source points look up the cell they fall into directly.

    Attributes:
        resolution: The voxel grid cell size.
        search_method: The neighbor search strategy. Always `SearchMethodTypes.DIRECT1` for this class.
    """
    supported_options = ("resolution",)

    def __init__(self,
                 name: str = "pcl_ndt",
                 resolution: float = 1.0,
                 num_threads: int = 1,
                 search_method: Union[SearchMethodTypes, str] = SearchMethodTypes.DIRECT1,
                 max_correspondence_distance: float = 1.0,
                 max_iteration: int = 64,
                 num_neighbors: int = 20) -> None:
        super().__init__(name=name,
                         num_threads=num_threads,
                         max_correspondence_distance=max_correspondence_distance,
                         max_iteration=max_iteration,
                         num_neighbors=num_neighbors)
        self.resolution = resolution
        self.search_method = eval_search_method(search_method)
        self._target_voxelmap = None

    def _covariance_neighbors(self, target: PointCloud) -> int:
        if self.search_method == SearchMethodTypes.KDTREE:
            num_neighbors = estimate_neighbor_count(target, radius=self.resolution)
            logger.debug(f"{self.name}: {num_neighbors} neighbors per covariance at resolution {self.resolution}.")
            return num_neighbors
        return self.num_neighbors

    def bind(self, target: PointCloud, source: PointCloud) -> None:
        super().bind(target=target, source=source)
        if self.search_method == SearchMethodTypes.KDTREE:
            self._target_voxelmap = None
        else:
            if self.search_method == SearchMethodTypes.DIRECT7:
                logger.debug(f"{self.name}: small_gicp offers a single direct cell lookup. Using it for DIRECT7.")
            self._target_voxelmap = small_gicp.GaussianVoxelMap(self.resolution)
            self._target_voxelmap.insert(self._target_points)

    def _align(self, init: np.ndarray) -> Tuple[np.ndarray, bool]:
        if self._target_voxelmap is None:
            return super()._align(init=init)
        result = small_gicp.align(self._target_voxelmap,
                                  self._source_points,
                                  init_T_target_source=init,
                                  max_correspondence_distance=self.max_correspondence_distance,
                                  num_threads=self.num_threads,
                                  max_iterations=self.max_iteration)
        logger.debug(f"{self.name} result: converged={result.converged}, iterations={result.iterations}, "
                     f"inliers={result.num_inliers}.")
        return np.asarray(result.T_target_source), result.converged


class ParallelNormalDistributionsTransform(NormalDistributionsTransform):
    """Multi-threaded `NormalDistributionsTransform` with a selectable neighbor search strategy.

    Meant to be constructed once and reconfigured for every point of a parameter sweep. With
    `SearchMethodTypes.KDTREE` correspondences are found with a k-d tree over the target instead of the voxel grid, and
    the per-point distributions are estimated from as many neighbors as a point typically has within `resolution`.
    """
    supported_options = ("resolution", "num_threads", "search_method")

    def __init__(self,
                 name: str = "pclomp_ndt",
                 resolution: float = 1.0,
                 num_threads: int = cpu_count(),
                 search_method: Union[SearchMethodTypes, str] = SearchMethodTypes.DIRECT7,
                 max_correspondence_distance: float = 1.0,
                 max_iteration: int = 64,
                 num_neighbors: int = 20) -> None:
        super().__init__(name=name,
                         resolution=resolution,
                         num_threads=num_threads,
                         search_method=search_method,
                         max_correspondence_distance=max_correspondence_distance,
                         max_iteration=max_iteration,
                         num_neighbors=num_neighbors)


ALGORITHMS = {"pcl_gicp": GeneralizedICP,
              "pclomp_gicp": ParallelGeneralizedICP,
              "pcl_ndt": NormalDistributionsTransform,
              "pclomp_ndt": ParallelNormalDistributionsTransform}


def make_registration(algorithm: str, **options: Any) -> RegistrationInterface:
    """Instantiates a registration algorithm by its identity.

    Args:
        algorithm: One of the keys of `ALGORITHMS`.
        options: Options applied with `RegistrationInterface.reconfigure`.

    Raises:
        ValueError: If `algorithm` is unknown.

    Returns:
        The registration algorithm.
    """
    if algorithm not in ALGORITHMS:
        raise ValueError(f"`algorithm` must be one of {list(ALGORITHMS)} but is {algorithm}.")
    registration = ALGORITHMS[algorithm]()
    registration.reconfigure(**options)
    return registration
