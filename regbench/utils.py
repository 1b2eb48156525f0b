"""Utility functions used throughout the project.

Functions:
    read_point_cloud: Reads point cloud data from file.
    read_point_cloud_parallel: Reads a list of point cloud files in parallel using multi-threading.
    write_point_cloud: Writes point cloud data to file.
    get_point_cloud_from_points: Convenience function to obtain point clouds from points.
    downsample: Reduces point cloud density with a voxel grid anchored at the origin.
    draw_geometries: Convenience function to draw 3D geometries.
    draw_registration_result: Draws target, source and aligned point clouds in distinct colors.
"""
import copy
import logging
import os
import time
from joblib import Parallel, delayed
from multiprocessing import cpu_count
from typing import Any, List, Union, Tuple

import numpy as np
import open3d as o3d

from .exceptions import LoadError, SaveError

PointCloud = o3d.geometry.PointCloud

LeafSizeTypes = Union[float, Tuple[float, float, float], List[float], np.ndarray]

logger = logging.getLogger(__name__)


def read_point_cloud(filename: str, **kwargs: Any) -> PointCloud:
    """Reads point cloud data from file.

    Args:
        filename: The path to the point cloud file. Anything Open3D reads plus NumPy `.npy` and `.npz` files.

    Raises:
        LoadError: If the file doesn't exist, can't be parsed or contains no points.

    Returns:
        The point cloud data read from file.
    """
    if not os.path.isfile(filename):
        raise LoadError(filename, "no such file")

    if filename.endswith(".npy") or filename.endswith(".npz"):
        try:
            potential_points = np.load(filename)
            if filename.endswith(".npz"):
                potential_points = potential_points[potential_points.files[0]]
        except (OSError, ValueError, IndexError) as e:
            raise LoadError(filename, str(e)) from e
        if potential_points.ndim != 2 or potential_points.shape[1] != 3:
            raise LoadError(filename, f"array has shape {potential_points.shape} which is not supported")
        point_cloud = get_point_cloud_from_points(points=potential_points)
    else:
        point_cloud = o3d.io.read_point_cloud(filename=filename,
                                              format=kwargs.get("format", 'auto'),
                                              remove_nan_points=kwargs.get("remove_nan_points", True),
                                              remove_infinite_points=kwargs.get("remove_infinite_points", True),
                                              print_progress=kwargs.get("print_progress", False))

    # Open3D reports unreadable files with a warning and an empty cloud.
    if point_cloud.is_empty():
        raise LoadError(filename, "malformed or empty point cloud")
    logger.debug(f"Read {len(point_cloud.points)} points from {filename}.")
    return point_cloud


def read_point_cloud_parallel(filenames: List[str],
                              num_threads: int = cpu_count(),
                              **kwargs: Any) -> List[PointCloud]:
    """Reads a list of point cloud files in parallel using multi-threading.

    Args:
        filenames: The paths to the point cloud files.
        num_threads: The number of parallel threads to run.

    Returns:
        The point clouds in the order of `filenames`.
    """
    if len(filenames) == 1:
        return [read_point_cloud(filename=filenames[0], **kwargs)]
    parallel = Parallel(n_jobs=max(1, min(num_threads, len(filenames))), prefer="threads")
    return parallel(delayed(read_point_cloud)(filename=filename, **kwargs) for filename in filenames)


def write_point_cloud(filename: str, point_cloud: PointCloud, write_ascii: bool = True) -> None:
    """Writes point cloud data to file.

    Args:
        filename: The destination path. The extension determines the format.
        point_cloud: The point cloud to write.
        write_ascii: Write the ASCII variant of the format.

    Raises:
        SaveError: If Open3D couldn't write the file.
    """
    directory = os.path.dirname(filename)
    if directory and not os.path.isdir(directory):
        raise SaveError(filename, f"directory {directory} does not exist")
    if not o3d.io.write_point_cloud(filename=filename, pointcloud=point_cloud, write_ascii=write_ascii):
        raise SaveError(filename)
    logger.debug(f"Wrote {len(point_cloud.points)} points to {filename}.")


def get_point_cloud_from_points(points: np.ndarray) -> PointCloud:
    """Convenience function to obtain point clouds from points.

    Args:
        points: The (N, 3) point coordinates.

    Returns:
        The point cloud created from `points`.
    """
    point_cloud = PointCloud()
    point_cloud.points = o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64).reshape(-1, 3))
    return point_cloud


def downsample(point_cloud: PointCloud, leaf_size: LeafSizeTypes = (0.1, 0.1, 0.1)) -> PointCloud:
    """Reduces point cloud density with a voxel grid anchored at the origin.

    Space is partitioned into axis-aligned cells of size `leaf_size` and every non-empty cell is replaced by the
    centroid of its points. Cells are indexed by `floor(point / leaf_size)`, so a centroid always falls into the cell
    it was computed from and downsampling a downsampled cloud again returns it unchanged. Open3D's
    `voxel_down_sample` anchors the grid at the cloud's minimum bound instead, which moves between passes.

    Args:
        point_cloud: The point cloud to downsample. Left unmodified.
        leaf_size: The cell size along x, y and z. A scalar is used for all three axes.

    Raises:
        ValueError: If any leaf size component isn't positive.

    Returns:
        A new, downsampled point cloud.
    """
    start = time.time()
    _leaf_size = np.broadcast_to(np.asarray(leaf_size, dtype=np.float64).ravel(), (3,))
    if np.any(_leaf_size <= 0):
        raise ValueError(f"`leaf_size` needs to be positive but is {leaf_size}.")

    points = np.asarray(point_cloud.points)
    if len(points) == 0:
        return PointCloud()

    cells = np.floor(points / _leaf_size).astype(np.int64)
    _, inverse, counts = np.unique(cells, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.ravel()
    centroids = np.empty((len(counts), 3), dtype=np.float64)
    for axis in range(3):
        centroids[:, axis] = np.bincount(inverse, weights=points[:, axis], minlength=len(counts)) / counts

    logger.debug(f"Downsampled {len(points)} to {len(centroids)} points with leaf size {tuple(_leaf_size)} in "
                 f"{time.time() - start} seconds.")
    return get_point_cloud_from_points(points=centroids)


def draw_geometries(geometries: List[o3d.geometry.Geometry],
                    window_name: str = "Visualizer",
                    size: Tuple[int, int] = (800, 600),
                    **kwargs: Any) -> None:
    """Convenience function to draw 3D geometries.

    Args:
        geometries: A list of Open3D geometry objects.
        window_name: The name of the visualization window.
        size: The width and height of the visualization window.
    """
    o3d.visualization.draw_geometries(geometries,
                                      window_name=window_name,
                                      width=size[0],
                                      height=size[1],
                                      point_show_normal=kwargs.get("point_show_normal", False))


def draw_registration_result(target: PointCloud,
                             source: PointCloud,
                             aligned: PointCloud,
                             window_name: str = "Registration Result",
                             **kwargs: Any) -> None:
    """Draws target (red), source (green) and aligned (blue) point clouds. Blocks until the window is closed.

    Args:
        target: The target point cloud.
        source: The source point cloud before registration.
        aligned: The source point cloud after registration.
        window_name: The name of the visualization window.
    """
    to_draw = list()
    for point_cloud, color in zip([target, source, aligned], [[1.0, 0, 0], [0, 1.0, 0], [0, 0, 1.0]]):
        _point_cloud = copy.deepcopy(point_cloud)
        _point_cloud.paint_uniform_color(color)
        to_draw.append(_point_cloud)
    draw_geometries(geometries=to_draw, window_name=window_name, **kwargs)
