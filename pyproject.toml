[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bitmite"
version = "0.1.0"
description = "A small BitTorrent client that downloads torrents from magnet links"
requires-python = ">=3.10"
dependencies = []
keywords = ["bittorrent", "magnet", "torrent", "bencode", "peer-to-peer"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: End Users/Desktop",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
bitmite = "bitmite.client:main"

[tool.hatch.build.targets.wheel]
packages = ["bitmite"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
