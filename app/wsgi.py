from app.docledger import create_app

app = create_app()
