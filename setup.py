from setuptools import setup, find_packages

setup(
    name="interview_voice",
    version="0.1.0",
    packages=find_packages(include=["interview_voice", "interview_voice.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "python-dotenv>=1.0.0",
        "pydantic>=2.4.2",
        "pydantic-settings>=2.0.3",
        "structlog>=23.2.0",
        "numpy>=1.24.0",
        "torch>=2.0.0",
        "librosa>=0.10.0",
        "soundfile>=0.12.1",
        "faster-whisper>=0.10.0",
        "openai>=1.3.0",
        "httpx>=0.25.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.25.0",
        ],
    },
)
