from setuptools import setup, find_packages

runtime_deps = [
    "numpy",
    "scipy>=1.8",
    "pandas",
    "numba",
    "arviz",
    "pydantic>=2",
    "tqdm",
    "polyagamma",
]

test_extras = [
    "pytest",
]

setup(
    name="tdlmm",
    version="0.1.1",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=runtime_deps,
    extras_require={
        "test": test_extras,
    },
    python_requires=">=3.9",
    description="Treed distributed-lag mixture models fit by Bayesian backfitting MCMC",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
