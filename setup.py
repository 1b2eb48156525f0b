from setuptools import find_packages, setup

setup(name="registration-benchmark",
      version="1.0",
      description="Timing and fitness benchmark for point cloud registration algorithms.",
      packages=find_packages(exclude=["tests", "*.tests", "*.tests.*", "tests.*"]),
      python_requires=">=3.8.0",
      install_requires=["open3d>=0.14.1",
                        "small_gicp>=1.0.0",
                        "numpy>=1.20",
                        "joblib>=1.0.0",
                        "tqdm>=4.62.3",
                        "tabulate>=0.8.9"],
      extras_require={"test": ["pytest>=6.2.3"]},
      package_data={"scripts": ["*.ini"]},
      include_package_data=True,
      license='GPLv3',
      entry_points={"console_scripts": ["align = scripts.align:main"]})
