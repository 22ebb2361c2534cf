"""
Setup file.
"""

import os

from setuptools import find_packages, setup

KEYWORDS = "rust cargo build matrix toolchain cache clippy audit cross-platform"
HERE = os.path.dirname(os.path.abspath(__file__))


def read_readme() -> str:
    readme = os.path.join(HERE, "README.md")
    if not os.path.exists(readme):
        return ""
    with open(readme, encoding="utf-8") as f:
        return f.read()


if __name__ == "__main__":
    setup(
        name="buildmatrix",
        version="0.1.0",
        description="Per-platform build matrix for a Cargo package",
        long_description=read_readme(),
        long_description_content_type="text/markdown",
        keywords=KEYWORDS,
        package_dir={"": "src"},
        packages=find_packages(where="src"),
        python_requires=">=3.11",
        install_requires=[
            "requests>=2.31",
            "tqdm>=4.66",
            "psutil>=5.9",
        ],
        extras_require={
            "test": ["pytest>=7.4"],
        },
        entry_points={
            "console_scripts": [
                "buildmatrix=buildmatrix.cli:main",
            ],
        },
        include_package_data=True)
