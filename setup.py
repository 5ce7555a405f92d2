from setuptools import setup, find_packages

setup(
    name="resilient-document-storage",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages("src"),
    install_requires=[
        "boto3>=1.28.0",
        "botocore>=1.31.0",
        "azure-storage-blob>=12.14.0",
        "azure-core>=1.26.0",
        "python-dotenv>=1.0.0",
        "prometheus-client>=0.17.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "moto[s3]>=5.0.0",
        ],
    },
    python_requires=">=3.8",
)
