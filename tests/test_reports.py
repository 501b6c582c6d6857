from types import SimpleNamespace

from reports import budget_utilization, category_spending, expense_summary


def expense(category_id, amount, type_="expense"):
    return SimpleNamespace(category_id=category_id, amount=amount, type=type_)


def category(id_, name, budget):
    cat = SimpleNamespace(id=id_, name=name, budget=budget)
    cat.to_dict = lambda: {"id": id_, "name": name, "budget": budget}
    return cat


def test_expense_summary():
    summary = expense_summary([
        expense(1, 100.0), expense(1, 50.0), expense(2, 2000.0, "income"),
    ])

    assert summary == {
        "totalExpenses": 150.0,
        "totalIncome": 2000.0,
        "netAmount": 1850.0,
        "expenseCount": 2,
        "incomeCount": 1,
        "averageExpense": 75.0,
        "averageIncome": 2000.0,
    }


def test_expense_summary_empty():
    summary = expense_summary([])

    assert summary["totalExpenses"] == 0.0
    assert summary["expenseCount"] == 0
    assert summary["averageIncome"] == 0.0


def test_category_spending_ignores_income_and_flags_budgets():
    food, fun, salary = category(1, "Food", 100), category(2, "Fun", 50), category(3, "Salary", 0)
    rows = category_spending([food, fun, salary], [
        expense(1, 85.0), expense(2, 60.0), expense(3, 3000.0, "income"),
    ])

    by_name = {r["name"]: r for r in rows}
    assert by_name["Food"]["spent"] == 85.0
    assert by_name["Food"]["remaining"] == 15.0
    assert by_name["Food"]["isCloseToBudget"] is True
    assert by_name["Fun"]["isOverBudget"] is True
    assert by_name["Fun"]["percentageUsed"] == 120.0
    assert by_name["Salary"]["spent"] == 0.0
    assert by_name["Salary"]["percentageUsed"] == 0.0

    summary = budget_utilization(rows)
    assert summary["totalBudget"] == 150.0
    assert summary["totalSpent"] == 145.0
    assert summary["overBudgetCategories"] == 1


def test_budget_utilization_empty():
    assert budget_utilization([])["utilizationPercentage"] == 0.0
