from setuptools import setup, find_packages

setup(
    name="bmsex",
    version="1.0.0",
    packages=find_packages(include=['bmsex', 'bmsex.*']),
    package_data={
        'bmsex.config': ['default_config.yaml'],
    },
    python_requires='>=3.9',
    install_requires=[
        'pyyaml',
        'sqlalchemy>=2.0',
        'pydantic>=2.0',
        'lxml',
        'httpx',
        'click',
        'fastapi',
        'python-multipart',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
        'postgres': [
            'psycopg2-binary',
        ],
    },
    entry_points={
        'console_scripts': [
            'bmsex=bmsex.cli:cli',
        ],
    },
)
