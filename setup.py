from setuptools import setup

setup(
    name='renderflow',
    version='0.1',
    packages=['renderflow'],
    install_requires=[
        'fastapi',
        'uvicorn',
        'python-multipart',
        'python-dotenv',
        'requests'
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
            'httpx'
        ],
    },
)
