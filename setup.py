"""
godelpy: A Gödelian Self-Modification Engine for Python

A reflective core that lets a running program:
1. Reify its own code into an immutable program arena and reflect it back
2. Inspect live units and evaluate reified code meta-circularly under step budgets
3. Search for fixed points and classify Liar and Russell paradox shapes
4. Rewrite itself with semantics-preserving transformations (memoization, inlining, ...)
5. Prove and independently verify correctness, termination, memory safety and complexity
6. Commit only modifications that pass every safety check and proof obligation
"""

from setuptools import setup, find_packages

setup(
    name="godelpy",
    version="1.0.0",
    description="Gödelian self-modification engine: reify, reason about and safely rewrite running Python code",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    author="godelpy developers",
    python_requires=">=3.10",
    packages=find_packages(include=["godelpy", "godelpy.*"]),
    install_requires=[
        "numpy>=1.24.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-benchmark>=4.0",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Interpreters",
        "Topic :: Scientific/Engineering :: Mathematics",
    ],
)
