"""Setup script for the erp-analytics package following Cosmic Python pattern."""

from setuptools import setup, find_namespace_packages

setup(
    name="erp-analytics",
    version="1.0.0",
    description="ERP Analytics - CQRS read side materializing per-tenant domain metrics",
    author="ERP Analytics Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src", include=["analytics*", "shared*"]),
    py_modules=["config"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic>=2",
        "sqlalchemy>=2.0,<2.1",
        "psycopg2-binary",
        "redis",
        "requests",
        "tenacity",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "httpx",
            "fakeredis",
        ],
        "dev": [
            "black",
            "flake8",
            "mypy",
            "pre-commit",
        ],
    },
    entry_points={
        "console_scripts": [
            "analytics-consumer=analytics.entrypoints.redis_eventconsumer:main",
            "analytics-reconciler=analytics.entrypoints.reconcile_scheduler:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.11",
        "Topic :: Office/Business :: Financial",
    ],
)
