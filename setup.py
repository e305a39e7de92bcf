#!/usr/bin/env python3
"""
Setup script for fedavg-sim.

Install with ``pip install -e .`` (add ``[test]`` for the test dependencies).
"""

from pathlib import Path

from setuptools import find_packages, setup

HERE = Path(__file__).parent


def read_requirements(filename="requirements.txt"):
    """Requirement specifiers from ``filename``, without comments or blank lines."""
    requirements = []
    for line in (HERE / filename).read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            requirements.append(line)
    return requirements


setup(
    name="fedavg-sim",
    version="1.0.0",
    description="Federated Averaging (FedAvg) simulator with chunked, crash-tolerant execution",
    python_requires=">=3.9",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=read_requirements(),
    extras_require={"test": ["pytest>=7.0.0"]},
    entry_points={
        "console_scripts": [
            "fedavg-sim=fedavg_sim.train:main",
            "fedavg-sim-worker=fedavg_sim.worker:main",
        ],
    },
)
