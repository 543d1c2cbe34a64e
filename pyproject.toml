[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "daprcallback"
version = "0.1.0"
description = "Callback services for the Dapr sidecar: service invocation, pub/sub topic events and input bindings, served over HTTP (WSGI) or dispatched through gRPC-style handler methods."
requires-python = ">=3.10"
keywords = ["dapr", "pubsub", "cloudevents", "microservices", "bindings", "wsgi"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Application Frameworks",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]
dependencies = [
    "werkzeug",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
daprcallback-demo = "daprcallback.demo:main"

[tool.hatch.build.targets.wheel]
packages = ["daprcallback"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
