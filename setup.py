"""Build unixbridge package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="unixbridge",
    version="0.1.0",
    description="Expose Unix domain sockets across a websocket overlay network",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: POSIX",
    ],
    python_requires=">=3.10",
    install_requires=[
        "click",
        "pydantic>=2",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
        "websockets>=14",
    ],
    extras_require={
        "dev": [
            "cryptography",
            "pytest",
            "pytest-asyncio>=0.23",
            "pytest-timeout",
        ],
    },
    entry_points={
        "console_scripts": [
            "unixbridge=unixbridge.run:cli",
        ],
    },
)
