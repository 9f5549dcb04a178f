# mongomodel/query/base.py
# Base des requêtes différées: construites de façon fluide, exécutées uniquement au `await`.

from __future__ import annotations

from typing import Any, Generator


class BaseQuery:
    """Requête "awaitable".

    Description:
        Les méthodes de construction ne font aucune I/O. `await query` appelle `exec()`;
        ré-attendre la même requête la ré-exécute (aucune mémorisation du résultat).
    """

    async def exec(self) -> Any:
        raise NotImplementedError("Query execution implementation is required!")

    def __await__(self) -> Generator[Any, None, Any]:
        return self.exec().__await__()
