[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "seesaw"
version = "0.1.0"
description = "Backend healthchecks (TCP, UDP, HTTP, DNS, RADIUS, ICMP) and IPVS service models for load balancers"
requires-python = ">=3.10"
keywords = ["healthcheck", "load-balancer", "ipvs", "radius", "dns", "monitoring"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
]
dependencies = [
    "dnspython",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["seesaw"]

[tool.pytest.ini_options]
addopts = "-ra"
