"""Services around the swap engine: reservations, confirmations, supervision."""
