from payroll_core import create_app

app = create_app()
