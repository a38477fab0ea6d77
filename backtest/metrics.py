# backtest/metrics.py


class MetricsAccumulator:
    """Нарастающие итоги по сделкам: O(1) на сделку, без хранения истории."""

    def __init__(self, profit_factor_cap=999.0, breakeven_tolerance=0.0):
        self.profit_factor_cap = profit_factor_cap
        self.breakeven_tolerance = breakeven_tolerance
        self.count = 0
        self.wins = 0
        self.losses = 0
        self.gross_profit = 0.0
        self.gross_loss = 0.0
        self.pnl = 0.0
        self.peak = 0.0
        self.max_dd = 0.0

    def add(self, pnl, outcome=None):
        self.count += 1
        if outcome is None:
            # без явного исхода классифицируем по pnl
            if pnl > self.breakeven_tolerance:
                outcome = "Win"
            elif pnl < -self.breakeven_tolerance:
                outcome = "Loss"
        if outcome == "Win":
            self.wins += 1
        elif outcome == "Loss":
            self.losses += 1

        if pnl > 0:
            self.gross_profit += pnl
        elif pnl < 0:
            self.gross_loss -= pnl

        self.pnl += pnl
        self.peak = max(self.peak, self.pnl)
        self.max_dd = max(self.max_dd, self.peak - self.pnl)

    def profit_factor(self):
        if self.gross_loss > 0:
            return min(self.profit_factor_cap, self.gross_profit / self.gross_loss)
        # нет убытков: капнутое значение вместо inf/NaN
        return self.profit_factor_cap if self.gross_profit > 0 else 0.0

    def as_dict(self):
        if not self.count:
            return {
                "count": 0,
                "wins": 0,
                "losses": 0,
                "breakevens": 0,
                "winrate": 0.0,
                "profit_factor": 0.0,
                "avg_return": 0.0,
                "pnl": 0.0,
                "max_dd": 0.0,
            }
        return {
            "count": self.count,
            "wins": self.wins,
            "losses": self.losses,
            "breakevens": self.count - self.wins - self.losses,
            "winrate": self.wins / self.count,
            "profit_factor": self.profit_factor(),
            "avg_return": self.pnl / self.count,
            "pnl": self.pnl,
            "max_dd": self.max_dd,
        }
