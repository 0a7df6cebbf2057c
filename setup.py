import setuptools

requirements = [
    "discord.py>=2.4",
    "SQLAlchemy>=2.0",
    "PyYAML",
    "typer",
    "aiohttp",
    "Pillow",
]

extras = {
    "test": ["pytest", "pytest-asyncio"],
    "postgres": ["psycopg[binary]"],
    "mysql": ["PyMySQL"],
}

packages = setuptools.find_namespace_packages(where=".", include=["GatePy", "GatePy.*"])
if not packages:
    raise ValueError("No packages detected.")

setuptools.setup(
    name="GateBot",
    version="1.0.0",
    packages=packages,
    py_modules=["cli"],
    install_requires=requirements,
    extras_require=extras,
    python_requires=">=3.11",
    entry_points={"console_scripts": ["gatebot=cli:bot"]},
    license="GNU General Public License v3.0",
    description="Discord admission gate: paged intake form, staff decision cards and review actions.",
    zip_safe=False,
)
