import os

from examcenter import create_app

app = create_app()

if __name__ == '__main__':
    # Run the application
    app.run(
        debug=os.environ.get('FLASK_DEBUG') == '1',
        host=os.environ.get('EXAMCENTER_HOST', '0.0.0.0'),
        port=int(os.environ.get('EXAMCENTER_PORT', '5000')),
    )
