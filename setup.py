from setuptools import setup, find_packages

setup(
    name="book2ai",
    version="0.1.0",
    description="Retrieval-augmented Q&A over book packs with streamed, cited answers",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi",
        "uvicorn",
        "pydantic>=2",
        "openai>=1.40",
        "httpx",
        "numpy",
        "requests",
        "typer",
        "rich",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        'console_scripts': [
            'book2ai=book2ai.cli:app',
        ],
    },
)
