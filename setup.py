from setuptools import setup, find_packages

setup(
    name="dtlsearch",
    version="0.1.0",
    description="Joint species tree, dating and DTL rate search from gene-family trees",
    package_dir={"": "dtlsearch"},
    packages=find_packages("dtlsearch"),
    install_requires=[
        "numpy>=1.24",
        "scipy>=1.10",
        "networkx>=3.0",
        "treeswift>=1.1",
    ],
    extras_require={
        "dev": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": [
            "dtlsearch=dtlsearch.cli:main",
        ],
    },
)
