from setuptools import setup, find_packages

runtime_deps = [
    "numpy",
    "scipy",
    "pandas",
    "scikit-learn",
    "numba",
    "arviz<1",
    "pydantic>=2",
    "tqdm",
    "graphviz",
    "ray[default]",
]

test_extras = [
    "pytest",
]

setup(
    name="bart_backfit",
    version="0.1.0",
    packages=find_packages(include=["bart_backfit", "bart_backfit.*"]),
    install_requires=runtime_deps,
    extras_require={
        "test": test_extras,
    },
    python_requires=">=3.8",
    description="Bayesian additive regression trees fit by backfitting MCMC, with Gaussian and logit likelihoods",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
