"""
Setup configuration for filegate
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding="utf-8")

setup(
    name="filegate",
    version="1.0.0",
    author="Filegate Team",
    description="One storage contract over S3, Azure Blob, Google Cloud Storage, Google Drive and Dropbox",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: System :: Filesystems",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "boto3>=1.34.0",
        "botocore>=1.34.0",
        "httpx>=0.26.0",
        "motor>=3.3.0",
        "cryptography>=41.0.0",
        "fastapi>=0.109.0",
        "google-cloud-storage>=2.14.0",
        "azure-storage-blob>=12.19.0",
        "tenacity>=8.2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    keywords="storage s3 azure gcs google-drive dropbox multipart gateway",
)
