from setuptools import setup, find_packages

setup(
    name="hsm_azure",
    version="1.0",
    description="Lustre HSM copytool and bulk importer backed by Azure Blob Storage",
    packages=find_packages(),
    install_requires=[
        "azure-storage-blob",
        "prefect",
        "python-dotenv",
        "pyyaml",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-mock",
        ],
    },
)
