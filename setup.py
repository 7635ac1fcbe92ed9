from setuptools import setup, find_namespace_packages

setup(
    name="approval-ledger",
    version="0.1.0",
    description="Risk-scored approvals with a versioned, hash-addressed decision history",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="Approval Ledger Maintainers",
    license="AGPL-3.0",
    packages=find_namespace_packages(include=["approval_core", "approval_core.*"]),
    python_requires=">=3.9",
    install_requires=[
        "flask>=3.0",
        "requests>=2.28",
    ],
    extras_require={
        "dev": ["pytest", "pytest-cov"],
    },
    entry_points={
        "console_scripts": [
            "approval=approval_core.cli:main",
        ],
    },
)
