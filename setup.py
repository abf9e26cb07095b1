from setuptools import setup, find_packages

setup(
    name="d2s",
    version="0.1.0",
    description="Strip a container image down to a scratch image holding only the requested software",
    python_requires=">=3.11.4",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    package_data={
        "d2s.ISOLATION": ["probe.sh"],
    },
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "psutil>=5.9",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
        "dev": [
            "pytest>=7.0",
            "black>=23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "d2s=d2s.CLI.main:main",
        ],
    },
)
