"""Setup configuration for order-fulfillment-pipeline project."""

from setuptools import setup, find_packages

setup(
    name="order-fulfillment-pipeline",
    version="1.0.0",
    description="Order and inventory services that reserve stock without overselling, over HTTP and Kafka",
    author="Your Name",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.109.0",
        "uvicorn>=0.27.0",
        "confluent-kafka>=2.3.0",
        "sqlalchemy>=2.0.23",
        "psycopg2-binary>=2.9.9",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "httpx>=0.25.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
)
