import os

from werkzeug.security import check_password_hash, generate_password_hash

from app import create_app
from models import Assessment, MockExam, MockExamSubject, Question, Subject, User, db

DEMO_USERS = [
    ('Test Student', 'student@test.com', 'password123', 'student'),
    ('Test Teacher', 'teacher@test.com', 'teacher123', 'teacher'),
    ('Admin User', 'admin@test.com', 'admin', 'admin'),
]

SEEDED_QUESTIONS = [
    ('What is 2 + 2?', ('3', '4', '5', '6'), 'B'),
    ('HTML stands for?', ('Hyper Text Markup Language', 'High Text', 'Hyper Tabular', 'None'), 'A'),
    ('Which is a Python keyword?', ('function', 'def', 'var', 'let'), 'B'),
    ('CSS is used for?', ('Structure', 'Database', 'Styling', 'Logic'), 'C'),
    ('Is Python compiled?', ('Yes', 'No, Interpreted', 'Both', 'None'), 'B'),
]

MOCK_QUESTIONS = {
    'Mathematics': [
        ('What is 7 x 8?', ('54', '56', '58', '64'), 'B'),
        ('What is the square root of 81?', ('7', '8', '9', '10'), 'C'),
        ('What is 15% of 200?', ('20', '25', '30', '35'), 'C'),
    ],
    'Science': [
        ('Water boils at sea level at?', ('90 C', '100 C', '110 C', '120 C'), 'B'),
        ('The chemical symbol for gold is?', ('Ag', 'Go', 'Gd', 'Au'), 'D'),
        ('Which planet is known as the Red Planet?', ('Mars', 'Venus', 'Jupiter', 'Mercury'), 'A'),
    ],
}


def _add_questions(assessment, rows):
    for index, (text, options, correct) in enumerate(rows):
        db.session.add(Question(
            assessment_id=assessment.id,
            question_text=text,
            option_a=options[0],
            option_b=options[1],
            option_c=options[2],
            option_d=options[3],
            correct_label=correct,
            order_index=index,
        ))


def initialize_database(app=None):
    app = app or create_app()

    print("\n===========================================")
    print("      DATABASE SETUP & DIAGNOSTICS")
    print("===========================================")

    db_uri = app.config.get('SQLALCHEMY_DATABASE_URI', '')
    print(f"ℹ️  App Config URI: {db_uri}")
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        print(f"📂 Target Database File: {os.path.abspath(db_uri.replace('sqlite:///', ''))}")

    with app.app_context():
        print("\n--- Resetting Database ---")
        db.drop_all()
        print("🗑️  Old tables dropped (SQL Reset).")
        db.create_all()
        print("✅ New tables created.")

        print("\n--- Adding Users ---")
        users = {}
        for name, email, password, role in DEMO_USERS:
            user = User(
                name=name,
                email=email,
                password=generate_password_hash(password, method='pbkdf2:sha256'),
                role=role,
            )
            db.session.add(user)
            users[role] = user
            print(f"✅ Added: {email}")
        db.session.flush()

        print("\n--- Adding Assessments ---")
        general = Subject(name='General Knowledge')
        db.session.add(general)
        db.session.flush()
        assessment = Assessment(
            title='Proctored Assessment',
            subject_id=general.id,
            teacher_id=users['teacher'].id,
            duration_minutes=30,
            passing_score=40,
        )
        db.session.add(assessment)
        db.session.flush()
        _add_questions(assessment, SEEDED_QUESTIONS)
        print(f"✅ Added: {assessment.title} ({len(SEEDED_QUESTIONS)} questions)")

        mock_exam = MockExam(
            title='Practice Mock Exam',
            description='Two subjects, taken one after another',
            duration_per_subject_minutes=10,
            total_duration_minutes=20,
            created_by=users['teacher'].id,
        )
        db.session.add(mock_exam)
        db.session.flush()
        for position, (subject_name, rows) in enumerate(MOCK_QUESTIONS.items(), start=1):
            subject = Subject(name=subject_name)
            db.session.add(subject)
            db.session.flush()
            section = Assessment(
                title=f'{mock_exam.title}: {subject_name}',
                subject_id=subject.id,
                teacher_id=users['teacher'].id,
                duration_minutes=mock_exam.duration_per_subject_minutes,
                is_mock_exam=True,
            )
            db.session.add(section)
            db.session.flush()
            _add_questions(section, rows)
            db.session.add(MockExamSubject(
                mock_exam_id=mock_exam.id,
                subject_id=subject.id,
                assessment_id=section.id,
                order_position=position,
            ))
        print(f"✅ Added: {mock_exam.title} ({len(MOCK_QUESTIONS)} subjects)")

        try:
            db.session.commit()
            print("💾 Changes saved to database.")
        except Exception as e:
            db.session.rollback()
            print(f"❌ Error saving seed data: {e}")
            raise

        print("\n--- 🔍 Verification Check ---")
        all_users = User.query.all()
        print(f"👥 Total Users Found in DB: {len(all_users)}")
        for u in all_users:
            print(f"   - ID: {u.id} | Email: {u.email} | Role: {u.role}")

        test_user = User.query.filter_by(email='student@test.com').first()
        if test_user and check_password_hash(test_user.password, 'password123'):
            print("\n✅ LOGIN CHECK PASSED: Password 'password123' matches hash.")
        else:
            print("\n❌ LOGIN CHECK FAILED: Hash mismatch.")

    print("\n===========================================")
    print(" SETUP COMPLETE")
    print(" 1. Run 'python app.py'")
    print(" 2. Login with: student@test.com / password123")
    print("===========================================\n")


if __name__ == '__main__':
    initialize_database()
