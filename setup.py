#!/usr/bin/env python3
"""
Setup script for the Orbit chain monitors
"""

from setuptools import setup

setup(
    name="orbit-monitor",
    version="1.0.0",
    description="Retryable ticket, batch poster and assertion monitors for Arbitrum Orbit chains",
    author="Offchain Labs",
    py_modules=[
        "assertion_monitor",
        "batch_poster_monitor",
        "block_scanner",
        "chains",
        "classifier",
        "config_manager",
        "correlator",
        "events",
        "logger_utils",
        "models",
        "retryable_monitor",
        "retryables",
        "rpc_failover",
        "slack_reporter",
    ],
    package_dir={"": "src"},
    install_requires=[
        "web3>=6.0.0,<7.0.0",
        "requests>=2.28.0",
        "eth-abi>=4.0.0,<5.0.0",
        "hexbytes>=0.3.0,<0.4.0",
        "rlp>=3.0.0",
        "python-dotenv>=1.0.0",
        "pytz>=2023.3",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "retryable-monitor=retryable_monitor:main",
            "batch-poster-monitor=batch_poster_monitor:main",
            "assertion-monitor=assertion_monitor:main",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
