from setuptools import setup, find_packages

setup(
    name="reminder-service",
    version="0.1.0",
    packages=find_packages(include=["reminder_service", "reminder_service.*"]),
    python_requires=">=3.10",
    install_requires=[
        "sqlalchemy>=2.0",
        "pydantic>=2",
        "pydantic-settings",
        "python-dotenv",
        "celery",
        "kombu",
        "croniter",
        "python-dateutil",
        "prometheus-client",
        "boto3",
        "botocore",
        "firebase-admin",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "reminder-scheduler=reminder_service.reminders.runner:main",
        ],
    },
)
