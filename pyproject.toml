[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "modbuslink"
version = "0.1.0"
description = "Modbus error codes, CRC16, RTU/ASCII serial framing and a threaded Modbus TCP server"
requires-python = ">=3.10"
dependencies = []
keywords = ["modbus", "rtu", "ascii", "tcp", "crc16", "serial", "rs485"]
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
    "Topic :: Software Development :: Embedded Systems",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["modbuslink"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
