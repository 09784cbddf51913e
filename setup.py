"""
VoiceQC setuptools build script.

Usage:
    # Development install:
    pip install -e .

    # With test tooling:
    pip install -e ".[test]"
"""

from setuptools import setup

APP_NAME = "VoiceQC"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Background transcription and translation queue for call-center dialogs",
    packages=[
        "voiceqc",
        "voiceqc.core",
    ],
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "voiceqc=main:main",
        ],
    },
)
