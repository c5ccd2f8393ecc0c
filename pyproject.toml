[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lbadmission"
version = "0.1.0"
description = "Admission webhooks that validate and default load balancer, driver and backend group resources"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "kubernetes",
    "admission",
    "webhook",
    "load-balancer",
    "json-patch",
    "validation",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
lbadmission-server = "lbadmission.server:main"

[tool.hatch.build.targets.wheel]
packages = ["lbadmission"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
