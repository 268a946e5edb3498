from setuptools import setup, find_packages

setup(
    name="report_graph",
    version="1.0.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy",
        "scipy",
        "pandas",
        "numba",
        "click",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "report-graph=report_graph.cli:main",
        ],
    },
    description="Spatio-temporal proximity graphs and graph clustering for geotagged reports",
    python_requires=">=3.9",
)
