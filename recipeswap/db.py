from os import environ

from neo4j import AsyncDriver, AsyncGraphDatabase

from recipeswap.utils.meta import SingletonMeta


class DatabaseManager(metaclass=SingletonMeta):
    """Singleton manager for the async Neo4j driver.

    The managed backend keeps comments, like edges and notifications in one
    Neo4j database; every store service borrows sessions from this driver.

    Attributes:
        _driver: The Neo4j driver instance
        _uri: URI of the Neo4j database
        _auth: Tuple of username and password for authentication
        _database: Name of the Neo4j database to connect to
    """

    def __init__(self) -> None:
        self._driver: AsyncDriver | None = None
        self._uri: str = environ.get("NEO4J_URI", "bolt://localhost:7687")
        self._auth: tuple[str, str] = (
            environ.get("NEO4J_USER", "neo4j"),
            environ.get("NEO4J_PASSWORD", ""),
        )
        self._database: str = environ.get("NEO4J_DATABASE", "neo4j")

    async def verify_connectivity(self) -> None:
        """Verify database connectivity with the configured credentials.

        Raises:
            neo4j.exceptions.ServiceUnavailable: If database is not reachable
            neo4j.exceptions.AuthError: If credentials are invalid
        """
        await self.driver.verify_connectivity()

    @property
    def driver(self) -> AsyncDriver:
        """Get or create the Neo4j driver instance.

        Returns:
            The async Neo4j driver used for all store operations
        """
        if not self._driver:
            self._driver = AsyncGraphDatabase.driver(
                self._uri,
                auth=self._auth,
                max_connection_pool_size=10,  # Default is 100
                connection_timeout=30,  # Seconds
            )
        return self._driver

    @property
    def database(self) -> str:
        """Get the name of the Neo4j database."""
        return self._database

    async def close(self) -> None:
        """Close the driver. A no-op if no connection was opened."""
        if self._driver:
            await self._driver.close()
            self._driver = None
