"""Scripts for the registration benchmark.

Files:
    __init__.py: This file.
    align.ini: Initialization file for `align.py`.
    align.py: Benchmarks point cloud registration algorithms on a target and a source point cloud.

Functions:
    align.eval_config: Evaluates data types of a ConfigParser object.
    align.print_config_dict: Pretty-prints a config dict created by 'eval_config'.
    align.run: Runs the benchmark.
    align.main: Console script entry point.
"""
