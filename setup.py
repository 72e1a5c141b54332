from setuptools import setup, find_namespace_packages

setup(
    name="dockit",
    version="0.1.0",
    description="Docker images and containers around a build's integration tests",
    license="Apache-2.0",
    packages=find_namespace_packages(where="src", include=["dockit", "dockit.*"]),
    package_dir={"": "src"},
    python_requires=">=3.8",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "httpx>=0.24",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
        "dev": [
            "black>=23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "dockit=dockit.CLI.main:main",
        ],
    },
)
