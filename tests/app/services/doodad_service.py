import secrets
import string

from mongocrud import CrudService

KEY_ALPHABET = string.ascii_letters + string.digits


class DoodadService(CrudService):
    """Example entity service: public wrappers around the protected CRUD operations"""

    def __init__(self, registry, model=None, reporter=None):
        kwargs = {'registry': registry}
        if reporter is not None:
            kwargs['reporter'] = reporter
        super().__init__(model if model is not None else registry.widgets.Doodad, **kwargs)
        self.modifiable_keys = ['name', 'status']

    def generate_key(self, attempt=0):
        return 'doodad_' + self.registry.environment_id_prefix() + ''.join(
            secrets.choice(KEY_ALPHABET) for _ in range(16)
        )

    async def create_doodad(self, data):
        def revise(payload, attempt):
            return {**payload, 'key': self.generate_key(attempt)}
        return await self._create_with_retry(data, revise)

    async def get_doodad(self, id):
        return await self._retrieve(id)

    async def find_doodads(self, criteria=None, options=None):
        return await self._find(criteria, options)

    async def count_doodads(self, criteria=None, options=None):
        return await self._count(criteria, options)

    async def update_doodad(self, doodad, data):
        return await self._update(doodad, data)

    async def delete_doodad(self, doodad):
        return await self._delete(doodad)

    async def delete_doodad_permanently(self, doodad):
        return await self._delete_permanently(doodad)
