# setup.py
from setuptools import setup, find_packages

setup(
    name="mesh_collector",
    version="0.1.0",
    packages=find_packages(include=["mesh_collector", "mesh_collector.*"]),
    install_requires=[
        "plyvel",             # LevelDB store
        "msgpack",            # document encoding
        "aiohttp",            # node API gateway client
        "prometheus_client",  # metrics
        "psutil",             # monitoring
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "mesh-collector=mesh_collector.node:run",
        ],
    },
)
