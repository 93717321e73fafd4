from setuptools import find_packages, setup

setup(
    name="luminum",
    version="0.0.1",
    packages=find_packages(include=["luminum", "luminum.*"]),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2",
        "cryptography>=42",
        "click>=8",
        "msgpack>=1.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "luminum=luminum.cli:cli",
            "luminum-server=luminum.cli:server",
            "luminum-client=luminum.cli:client",
        ],
    },
)
