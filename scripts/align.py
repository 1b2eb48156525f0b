#!/usr/bin/env python3
"""Benchmarks point cloud registration algorithms on a target and a source point cloud.

Usage:
    align [options] target.pcd source.pcd
"""
import argparse
import ast
import configparser
import logging
import os
import sys
import time
from typing import Any, Dict, List, Union

import tabulate

from regbench import benchmark, diagnostics, set_logger_level, utils
from regbench.exceptions import AlignmentFailure, ConfigError, LoadError

USAGE = "usage: align target.pcd source.pcd"
DEFAULT_CONFIG = os.path.join(os.path.dirname(os.path.abspath(__file__)), "align.ini")

logger = logging.getLogger(__name__)


def eval_config(config: configparser.ConfigParser) -> Dict[str, Dict[str, Any]]:
    """Evaluates data types of a ConfigParser object.

    Args:
        config: A ConfigParser object.

    Returns:
        A dict of dicts with sections and options identical to 'config' but with evaluated values.
    """
    config_dict = dict()
    for section in config.sections():
        config_dict[section] = dict()
        for option, values in config.items(section):
            try:
                values = ast.literal_eval(values)
            except (ValueError, SyntaxError):
                if values.lower() == "none":
                    values = None
                elif values.lower() in ["true", "false"]:
                    values = values.lower() == "true"
            config_dict[section][option] = values
    return config_dict


def print_config_dict(config_dict: Dict[str, Any], pretty: bool = True) -> None:
    """Pretty-prints a config dict created by 'eval_config'.

    Args:
        config_dict: A config dict created by 'eval_config'.
        pretty: Pretty-print dict keys.
    """
    config_list = list()
    for section in config_dict.keys():
        config_list.append(("", ""))
        config_list.append((section.upper().replace('_', ' ') if pretty else section, ""))
        config_list.append(('-' * len(section), ""))
        for key, value in config_dict[section].items():
            value = str(value)
            config_list.append((key.capitalize().replace('_', ' ') if pretty else key,
                                value.capitalize() if value.lower() in ["true", "false", "none"] and pretty else value))
    print(tabulate.tabulate(config_list))


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="align",
                                     description="Benchmarks point cloud registration algorithms.",
                                     usage="%(prog)s [options] target.pcd source.pcd")
    parser.add_argument("files", nargs="*", help="Target and source point cloud files.")
    parser.add_argument("-c", "--config",
                        default=DEFAULT_CONFIG, type=str,
                        help="Path to benchmark config.")
    parser.add_argument("-o", "--output-dir", type=str, help="Directory for the point cloud artifacts.")
    parser.add_argument("-l", "--leaf-size", type=float, help="Downsampling voxel size along all axes.")
    parser.add_argument("-n", "--repeats", type=int, help="Number of aggregated alignments per configuration.")
    parser.add_argument("-d", "--draw", action="store_true", default=None, help="Visualize the registration result.")
    parser.add_argument("--no-draw", action="store_false", dest="draw", help="Don't visualize.")
    parser.add_argument("--fail-fast", action="store_true", default=None,
                        help="Abort at the first failing configuration.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Get verbose output during execution.")
    return parser


def read_config(filename: Union[str, None] = None,
                config: Union[configparser.ConfigParser, None] = None) -> Union[configparser.ConfigParser, None]:
    """Reads a benchmark config on top of the bundled defaults in `DEFAULT_CONFIG`.

    Sections and options missing from the user config keep their default values.

    Args:
        filename: Path to a config file.
        config: A config object. Takes precedence over `filename`.

    Returns:
        The merged config or `None` if `filename` can't be read.
    """
    merged = configparser.ConfigParser(inline_comment_prefixes='#')
    merged.read(DEFAULT_CONFIG)
    if config is not None:
        merged.read_dict(config)
    elif filename is not None and not merged.read(filename):
        return None
    return merged


def run(argv: Union[List[str], None] = None, config: Union[configparser.ConfigParser, None] = None) -> int:
    """Runs the benchmark.

    Args:
        argv: Command line arguments. Read from `sys.argv` if not provided.
        config: The benchmark config. Read from the `--config` file if not provided.

    Returns:
        The process exit status.
    """
    start = time.time()
    try:
        args = get_parser().parse_args(argv)
    except SystemExit as e:
        # `--help` exits with 0. Malformed arguments are treated like a wrong file count.
        if e.code not in [0, None]:
            print(USAGE)
        return 0
    if len(args.files) != 2:
        print(USAGE)
        return 0
    target_file, source_file = args.files

    # Read config from argument or file
    config = read_config(filename=args.config, config=config)
    if config is None:
        logger.error(f"Failed to read config {args.config}.")
        return 1

    # Evaluate config, command line arguments take precedence
    config_dict = eval_config(config)
    data = config_dict["data"]
    processing = config_dict["processing"]
    benchmark_params = config_dict["benchmark"]
    options = config_dict["options"]
    if args.output_dir is not None:
        data["output_dir"] = args.output_dir
    if args.leaf_size is not None:
        processing["leaf_size"] = args.leaf_size
    if args.repeats is not None:
        benchmark_params["repeats"] = args.repeats
    if args.draw is not None:
        options["draw"] = args.draw
    if args.fail_fast is not None:
        benchmark_params["fail_fast"] = args.fail_fast

    # Enable verbose output
    if args.verbose or options["verbose"]:
        logger.setLevel(logging.DEBUG)
        set_logger_level(logging.DEBUG)
        print_config_dict(config_dict)

    # Load target and source data
    try:
        target, source = utils.read_point_cloud_parallel(filenames=[target_file, source_file])
    except LoadError as e:
        logger.error(str(e))
        return 1
    if options["memory_usage"]:
        _print_memory_usage()

    # Downsample target and source data
    target = utils.downsample(target, leaf_size=processing["leaf_size"])
    source = utils.downsample(source, leaf_size=processing["leaf_size"])
    logger.debug(f"Benchmarking with {len(target.points)} target and {len(source.points)} source points.")

    # Run the benchmark
    configurations = benchmark.build_configurations(resolution=benchmark_params["resolution"],
                                                    thread_options=benchmark_params["num_threads"],
                                                    search_methods=benchmark_params["search_methods"])
    try:
        runs = list(benchmark.run_benchmark_suite(
            target=target,
            source=source,
            configurations=configurations,
            output_dir=data["output_dir"],
            extension=data["extension"],
            repeats=benchmark_params["repeats"],
            fail_fast=benchmark_params["fail_fast"],
            progress=options["progress"] and not (args.verbose or options["verbose"]),
            max_correspondence_distance=benchmark_params["max_correspondence_distance"],
            max_iteration=benchmark_params["max_iteration"]))
    except (AlignmentFailure, ConfigError) as e:
        logger.error(str(e))
        return 1
    logger.debug(f"Execution took {time.time() - start} seconds.")

    benchmark.print_results(runs)
    if options["memory_usage"]:
        _print_memory_usage()

    succeeded = [run for run in runs if run.succeeded]
    if options["draw"] and succeeded:
        utils.draw_registration_result(target=target,
                                       source=source,
                                       aligned=succeeded[-1].result.aligned,
                                       window_name=f"{succeeded[-1].name} Registration Result")
    return 0


def _print_memory_usage() -> None:
    table = diagnostics.report_memory_usage()
    if table is not None:
        print()
        print(table)
        print()


def main() -> None:
    logging.basicConfig(format="%(levelname)s:%(name)s: %(message)s")
    sys.exit(run())


if __name__ == "__main__":
    main()
