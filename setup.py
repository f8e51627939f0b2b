from setuptools import setup, find_packages

setup(
    name="privacy-engine",
    version="0.1.0",
    description="Browser privacy enforcement engine: tracker classification, rule-based blocking and anti-fingerprinting countermeasures",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main"],
    package_data={"core": ["data/*.json"]},
    include_package_data=True,
    install_requires=[
        "playwright>=1.40.0",
        "camoufox>=0.4.11",
        "browserforge>=1.2.1",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "python-dotenv>=1.0.0",
        "aiohttp>=3.9.0",
        "rich>=13.7.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "privacy-engine=main:run",
        ],
    },
    python_requires=">=3.9",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Security",
        "Programming Language :: Python :: 3.9",
    ],
)
