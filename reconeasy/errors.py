# reconeasy/errors.py
# Error taxonomy for rate-card resolution and payout computation.


class ReconError(Exception):
    """Base class. `code` is the stable reason recorded in batch reports."""

    code = "recon_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NoActiveRateCard(ReconError):
    code = "no_active_rate_card"


class AmbiguousRateCard(ReconError):
    code = "ambiguous_rate_card"

    def __init__(self, message: str, card_ids=()):
        super().__init__(message)
        self.card_ids = tuple(card_ids)


class PriceOutOfBounds(ReconError):
    code = "price_out_of_bounds"


class NoMatchingSlab(ReconError):
    code = "no_matching_slab"


class InvalidInput(ReconError, ValueError):
    """Malformed numeric input. Fatal to the single computation."""

    code = "invalid_input"
