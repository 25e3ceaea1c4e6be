from setuptools import setup, find_packages

setup(
   name="mongocrud",
   version="1.0.0",
   description="MongoDB connection registry, public identifiers and soft-delete CRUD services",
   package_dir={"": "src"},
   packages=find_packages(where="src"),
   include_package_data=True,
   python_requires=">=3.9",
   install_requires=[
       "motor>=3.3",
       "pymongo>=4.5",
       "pydantic>=2.5",
       "fastapi>=0.100",
       "base58>=2.1",
   ],
   extras_require={
       "test": [
           "pytest>=7.4",
           "pytest-asyncio>=0.23",
           "httpx>=0.25",
       ],
   },
)
