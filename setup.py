from setuptools import setup, find_packages

setup(
    name="xpoll",
    version="0.1.0",
    packages=find_packages(include=["xpoll", "xpoll.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "starlette>=0.36",
        "pydantic>=2.6",
        "pydantic-settings>=2.3",
        "httpx>=0.27",
        "redis>=5.0",
        "uvicorn>=0.29",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "respx>=0.21",
        ],
    },
)
