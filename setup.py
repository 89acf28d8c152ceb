from setuptools import setup, find_packages

setup(
    name="hlsforge",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "ffmpeg-python",
        "rich>=13.0.0",  # Explicit minimum version
        "psutil",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "hlsforge=hlsforge.__main__:main",
        ],
    },
    python_requires=">=3.8",
)
