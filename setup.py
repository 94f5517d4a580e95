# setup.py
from setuptools import setup, find_namespace_packages

setup(
    name="gridsettle",
    version="0.1.0",
    packages=find_namespace_packages(include=["gridsettle", "gridsettle.*"]),
    python_requires=">=3.9",
    install_requires=[
        "msgpack",            # records, signing data, proofs
        "rlp",                # tree nodes
        "PyNaCl",             # ed25519 validator votes
        "cryptography",       # ECDSA submitter signatures
        "pycryptodome",       # keccak
        "plyvel",             # LevelDB
        "prometheus_client",  # metrics
        "psutil",             # monitoring
    ],
    extras_require={
        "test": ["pytest", "pytest-asyncio"],
    },
    entry_points={
        "console_scripts": [
            "gridsettle-node=gridsettle.node:cli",
            "gridsettle-genesis=gridsettle.genesis_tool:main",
        ],
    },
)
