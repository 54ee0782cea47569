from __future__ import annotations


class DonorDrawsError(Exception):
    """Base class for user-visible, non-fatal failures."""


class DrawNotFound(DonorDrawsError):
    def __init__(self, draw_id: str):
        super().__init__(f'Draw with ID "{draw_id}" not found.')
        self.draw_id = draw_id


class DuplicateDrawId(DonorDrawsError):
    def __init__(self, draw_id: str):
        super().__init__(f'A draw with ID "{draw_id}" already exists.')
        self.draw_id = draw_id


class DrawInactive(DonorDrawsError):
    def __init__(self, draw_id: str):
        super().__init__(f'Draw "{draw_id}" is not active.')
        self.draw_id = draw_id


class InvalidDrawInput(DonorDrawsError):
    pass


class NoEntries(DonorDrawsError):
    def __init__(self, draw_id: str):
        super().__init__(f'No entries found for draw "{draw_id}".')
        self.draw_id = draw_id


class StoreUnavailable(RuntimeError):
    """The document store cannot produce even a default document."""
