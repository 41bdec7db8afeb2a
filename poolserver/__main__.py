import os

from poolserver import create_app


app = create_app()

if __name__ == '__main__':
    app.run(host=os.getenv("POOLSERVER_HOST", "0.0.0.0"),
            port=int(os.getenv("POOLSERVER_PORT", "8080")))
