"""
Setup script for smart-topics.

Smart Topics groups a user's saved notes into thematic topics using text
embeddings and density clustering. Topics keep their identity across
rebuilds, and each topic carries a deduplicated event timeline.

The 'smart-topics' command is the CLI entry point; the HTTP API is served
with uvicorn (see main.py).
"""

from setuptools import find_packages, setup

setup(
    name="smart-topics",
    version="0.3.0",
    description="Embedding-based topic clustering with stable topic identity and event timelines",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(include=["smart_topics", "smart_topics.*"]),
    py_modules=["config"],
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.12.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # HTTP
        "httpx>=0.25.0",
        "fastapi>=0.110.0",
        "uvicorn>=0.27.0",
        # Logging
        "loguru>=0.7.0",
        # Numerics & clustering
        "numpy>=1.24.0",
        "scikit-learn>=1.3.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "aiosqlite>=0.19.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
        "local-ai": [
            "sentence-transformers>=2.2.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "smart-topics=smart_topics.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Text Processing :: General",
    ],
    keywords="topics clustering embeddings dbscan knowledge-base",
)
