# Package installation script

from setuptools import setup, find_namespace_packages

setup(
    name="greenhouse_gateway",
    version="0.1.0",
    packages=find_namespace_packages(where="src", include=["greenhouse_gateway*"]),
    package_dir={"": "src"},
    python_requires=">=3.9",
    entry_points={
        "console_scripts": [
            "greenhouse_gateway=greenhouse_gateway.__main__:main",
        ],
    },
    install_requires=[
        "fastapi",
        "hypercorn",
        "pyyaml",
        "aiosqlite",
        "pydantic>=2",
        "aiohttp",
        "tzdata",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
