"""Setup script for the Order Saga service."""

from setuptools import setup, find_packages

setup(
    name="order-saga",
    version="1.0.0",
    description="Saga-orchestrated order fulfillment with idempotency, circuit breaking and an outbox",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-cov>=4.1.0",
            "aiosqlite>=0.19.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "order-saga-api=order_saga.api.main:main",
            "order-saga-payments=order_saga.api.payments_main:main",
            "order-saga-outbox-dispatcher=order_saga.workers.outbox_dispatcher:start_outbox_dispatcher",
            "order-saga-event-subscriber=order_saga.workers.event_subscriber:start_event_subscriber",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
