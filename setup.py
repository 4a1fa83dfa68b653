#!/usr/bin/env python


from setuptools import setup, find_packages


setup(
    name="cnseg",
    version="1.0.0",
    description="Copy-number segmentation of multi-track binned genomic signal",
    package_dir={"": "src"},
    packages=find_packages("src"),
    entry_points={
        "console_scripts": [
            "cnseg=cnseg.segment:main"
        ]
    },
    python_requires=">3.8",
    install_requires=[
        "numpy",
        "pandas",
        "pysam>=0.23.3",
        "tqdm"
    ],
    extras_require={
        "tests": ["pytest", "pytest-cov"]
    },
    include_package_data=True,
    zip_safe=False
)
