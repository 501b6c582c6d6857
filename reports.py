import pandas as pd

CLOSE_TO_BUDGET_PCT = 80


def _expense_frame(expenses):
    rows = [{"category_id": e.category_id, "type": e.type, "amount": float(e.amount)} for e in expenses]
    return pd.DataFrame(rows, columns=["category_id", "type", "amount"])


def expense_summary(expenses):
    df = _expense_frame(expenses)
    stats = df.groupby("type")["amount"].agg(["count", "sum", "mean"])

    def stat(kind, column, default=0.0):
        if kind not in stats.index:
            return default
        return stats.loc[kind, column]

    total_expenses = round(float(stat("expense", "sum")), 2)
    total_income = round(float(stat("income", "sum")), 2)
    return {
        "totalExpenses": total_expenses,
        "totalIncome": total_income,
        "netAmount": round(total_income - total_expenses, 2),
        "expenseCount": int(stat("expense", "count", 0)),
        "incomeCount": int(stat("income", "count", 0)),
        "averageExpense": round(float(stat("expense", "mean")), 2),
        "averageIncome": round(float(stat("income", "mean")), 2),
    }


def category_spending(categories, expenses):
    """Budget progress per category, counting only ``expense`` transactions."""
    df = _expense_frame(expenses)
    spent_by_category = df[df["type"] == "expense"].groupby("category_id")["amount"].sum().to_dict()

    rows = []
    for category in categories:
        spent = round(float(spent_by_category.get(category.id, 0.0)), 2)
        budget = float(category.budget or 0.0)
        pct = round(spent / budget * 100, 2) if budget > 0 else 0.0
        row = category.to_dict()
        row.update({
            "spent": spent,
            "remaining": round(budget - spent, 2),
            "percentageUsed": pct,
            "isOverBudget": spent > budget,
            "isCloseToBudget": CLOSE_TO_BUDGET_PCT <= pct <= 100,
        })
        rows.append(row)
    return rows


def budget_utilization(spending_rows):
    if not spending_rows:
        return {"totalBudget": 0.0, "totalSpent": 0.0, "totalRemaining": 0.0,
                "utilizationPercentage": 0.0, "overBudgetCategories": 0}

    df = pd.DataFrame(spending_rows)
    total_budget = round(float(df["budget"].sum()), 2)
    total_spent = round(float(df["spent"].sum()), 2)
    return {
        "totalBudget": total_budget,
        "totalSpent": total_spent,
        "totalRemaining": round(total_budget - total_spent, 2),
        "utilizationPercentage": round(total_spent / total_budget * 100, 2) if total_budget > 0 else 0.0,
        "overBudgetCategories": int(df["isOverBudget"].sum()),
    }
